"""HTTP surface: health, tallies, live stream and metrics."""
