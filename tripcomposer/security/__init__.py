"""Security: access control, audit logging and access tokens."""
