"""HTTP surface: routers, request schemas and dependency providers."""
