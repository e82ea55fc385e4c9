"""
Crypto advisory ML signal core.

Trains directional and anomaly models from engineered market features, keeps a
versioned model registry, fuses model outputs into ensemble predictions and
resolves them against realized prices.
"""

__version__ = "1.0.0"
