"""Run test-generation agents behind one normalized event stream."""

__version__ = "0.1.0"
