"""Background jobs (rq on Redis) that drive the incident pipeline."""
