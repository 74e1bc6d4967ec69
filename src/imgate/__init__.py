"""imgate: multi-session gateway to a remote messaging backend."""

__version__ = "0.1.0"
