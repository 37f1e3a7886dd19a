"""AbuseShield: request abuse-prevention pipeline."""
