"""HTTP surface — FastAPI routers over the hostplane context."""
