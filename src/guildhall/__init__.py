"""Guild Hall: commission dispatch and worker supervision."""

__version__ = "0.4.0"
