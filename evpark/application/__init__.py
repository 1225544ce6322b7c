"""Application layer: use cases that read and write the table store."""
