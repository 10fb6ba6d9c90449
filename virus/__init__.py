"""virus - build orchestration for the Vira language package manager."""

__version__ = "0.1.0"
