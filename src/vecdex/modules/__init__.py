"""Storage and index modules for :mod:`vecdex`."""
