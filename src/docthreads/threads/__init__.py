"""Thread and session coordination core."""
