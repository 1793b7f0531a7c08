"""
netharness: scripted integration tests for networked peers.

A test is an ordered list of steps ending in END. The interpreter runs them
one at a time, lets steps share state through traits, and on any failure
cleans up every started step and reaps every child process.

    from netharness import run, end
    from netharness.cmds import NetjailStart, NetjailStop

    exit_code = run([NetjailStart("start", "2", "1"), NetjailStop("stop", "2", "1"), end()])
"""

from netharness.engine.interpreter import END, Interpreter, RunResult, end, run, run_async

__version__ = "0.1.0"

__all__ = ["END", "Interpreter", "RunResult", "end", "run", "run_async", "__version__"]
