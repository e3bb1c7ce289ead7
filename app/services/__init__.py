"""Service layer: provisioning, reconciliation and device access."""
