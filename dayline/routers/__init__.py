"""HTTP routers for the Dayline API."""
