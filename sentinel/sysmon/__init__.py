"""Process telemetry: models, store, hierarchy and snapshot sources."""
