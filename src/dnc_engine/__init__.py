"""
DNC compliance engine: opt-out list, membership filter, call-blocking gate.
"""

__version__ = "0.1.0"
