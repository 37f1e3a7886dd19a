"""HTTP routers: admin surface and CSRF token issuance."""
