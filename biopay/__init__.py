"""BioPay biometric payment settlement service."""

__version__ = "0.1.0"
