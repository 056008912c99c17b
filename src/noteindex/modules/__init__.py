"""Feature modules for :mod:`noteindex`."""
