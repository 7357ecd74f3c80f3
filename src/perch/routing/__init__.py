"""Routing: path patterns, routes, status routes and result coercion.

Routes are matched in registration order; the first one that doesn't
decline answers the request.
"""
