"""tether.core — value types, error taxonomy and configuration."""
