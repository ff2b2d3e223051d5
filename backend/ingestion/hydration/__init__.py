"""Hydration: fetch the records labels point at, then their blobs."""
