"""Directory service clients exposing the management API used for reconciliation."""
