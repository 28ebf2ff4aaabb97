"""Domain models for cloudcode: entities, outcomes, configuration and log records."""
