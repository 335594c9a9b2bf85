"""Models and utilities shared across CareWatch services."""
