"""Parsing and evaluation of Sigma detection and correlation rules against log events."""

__version__ = "0.2.2"