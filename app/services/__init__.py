"""Business logic services for the marketplace core."""
