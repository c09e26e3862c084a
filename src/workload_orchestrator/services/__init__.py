"""Service layer built on top of the integrations."""
