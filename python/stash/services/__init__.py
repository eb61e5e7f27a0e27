"""Business logic services.

Services are called by route handlers and orchestrate database operations.
Each takes an explicit database Session; none reads request state.
"""
