"""HTTP surface for the campus emissions core."""
