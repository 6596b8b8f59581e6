"""Results sync services."""
