"""rootbundle: extraction and handoff engine for self-extracting rootfs archives."""

__all__ = ["__version__"]

__version__ = "0.1.0"
