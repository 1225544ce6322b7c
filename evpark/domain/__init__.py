"""Domain layer: records, policy configuration and eligibility rules."""
