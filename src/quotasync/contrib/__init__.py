"""Optional integrations for quota-sync."""
