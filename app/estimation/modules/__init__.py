"""Feature packages. Each owns its models and service functions and shares the platform
primitives in `app.estimation` (roles, audit trail, attachment store, sessions)."""
