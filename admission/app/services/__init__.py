"""Rate limiting services: tier registry, window stores, limiter and sweeper."""
