"""
ML package for the crypto signal pipeline.

Training builds chronologically split datasets from feature rows and promotes
models through the registry; inference fuses the active models into ensemble
predictions and trading signals.
"""

__version__ = "1.0.0"
