"""
Application Layer

The aiohttp web application: configuration, routes and handlers, middleware, metrics and background tasks.

Key Components:
- config.py: Settings and typed AppKeys for shared resources
- server.py: Application factory and startup/shutdown of shared resources
- middleware.py: CORS, security headers, metrics, error envelope, Sentry and rate limiting
- errors.py: `AppError` and the JSON response envelopes
- tasks.py: Health gauge, provider token refresh and cleanup tasks
- handlers/: Request handlers grouped by API area
- cli.py: `tradedash-api` entry point
"""
