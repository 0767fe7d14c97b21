"""
Call-dispatch boundary.

Kept import-light: submodules pull in the compliance service on demand.
"""

__all__: list[str] = []
