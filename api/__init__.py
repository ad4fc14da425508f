"""HTTP surface and process lifespan."""
