"""Wire framing and namespace topology."""
