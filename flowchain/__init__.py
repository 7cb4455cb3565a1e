"""Declarative, label-wired processing graphs run over threaded channels."""

__version__ = "0.1.0"
__all__ = ["__version__"]