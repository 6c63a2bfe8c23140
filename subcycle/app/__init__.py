"""Application layer: billing domain, webhooks, and the operator API."""
