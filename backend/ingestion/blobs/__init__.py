"""Blob fingerprinting, conditional download and storage."""
