"""Infrastructure layer: storage adapters and host capabilities."""
