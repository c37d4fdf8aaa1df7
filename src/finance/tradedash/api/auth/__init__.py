"""
Authentication

Two ways in: a username and password exchanged for an HS256 bearer token, or Google sign-in that ends with a
`session_id` cookie. Service functions here work on the caller's database session and never commit.
"""
