"""Google sign-in portal backed by a hosted Postgres store."""
