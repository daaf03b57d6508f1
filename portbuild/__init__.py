"""portbuild - dependency resolver and parallel build scheduler for a ports tree."""

__version__ = "0.1.0"
