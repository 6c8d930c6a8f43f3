"""Development loop tooling for Titan Planet apps."""

__version__ = "0.1.0"
