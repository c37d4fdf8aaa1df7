"""
Trading Dashboard API

Backend for the trading dashboard. It owns user accounts, browser sessions and Google sign-in, and fronts the
market data and trading services the dashboard reads from.

Key Components:
- app: aiohttp application, request handlers, middleware and background tasks
- auth: Passwords, bearer tokens, Google OAuth, sessions and linked accounts
- market: Market data instruments and subscriptions
- trading: Exchange clients and the trading service
- model: Database models

Request flow:
1. Middleware applies CORS, security headers, metrics, error handling and rate limiting
2. Handlers validate JSON bodies with pydantic and call into the service packages
3. Services work inside the handler's database transaction; failures are raised as `AppError`
4. The error middleware renders every `AppError` as the JSON error envelope
"""
