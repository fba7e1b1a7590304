"""Utility helpers: logging configuration and the terminal approval channel."""
