"""Acne lesion classification with a frozen feature extractor and a trainable head."""

__version__ = "0.1.0"
