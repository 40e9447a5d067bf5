"""Business logic services backing the PLANT API routers."""
