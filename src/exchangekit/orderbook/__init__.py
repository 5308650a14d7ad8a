"""Order book reconstruction from snapshot and delta streams."""
