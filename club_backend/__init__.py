"""
Backend package for the club website.

This package provides a FastAPI application that stores competition
results and club documents inline in a relational database, serves them
over a small REST API, and guards writes behind a single admin login.
"""

__version__ = "2.1.0"
