"""Multi-tenant messaging session manager and webhook relay."""
