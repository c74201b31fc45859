"""Emisión de comprobantes electrónicos SUNAT (multi-RUC)."""

__version__ = "1.0.0"
