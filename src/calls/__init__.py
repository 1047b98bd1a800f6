"""Call records, lifecycle and monitoring fan-out."""
