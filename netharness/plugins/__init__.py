"""Node scripts loadable by the helper as `module:function`."""
