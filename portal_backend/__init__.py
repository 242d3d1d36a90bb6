"""
portal_backend package

Course-site access backend: Stripe checkout and webhooks, entitlement
records, lesson progress, and the client-side access resolver.

    uvicorn portal_backend.main:app

Do NOT put runtime logic here.
"""
