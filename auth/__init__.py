"""auth/ -- Credentials, two-factor, sessions, OAuth linking and the AuthOrchestrator.

Layer rule: auth/ imports from core/, audit/, ratelimit/ and third-party
libraries. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
