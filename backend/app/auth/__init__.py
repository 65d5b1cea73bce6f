"""Authentication module.

Resolves the bearer credential presented at WebSocket handshake to a
stable identity id. Credential issuance lives outside this service.

Services:
    - TokenVerifier: JWT verification with PyJWT.
"""
