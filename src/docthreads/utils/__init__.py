"""Utility helpers shared across docthreads modules."""
