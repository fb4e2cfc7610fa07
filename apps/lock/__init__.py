"""
Lock App - lock screen credential checks

Responsibilities:
- Validating and length-capping submitted credentials
- Rate limiting failed attempts with a timed lockout
- Constant-time comparison against plain or PBKDF2-hashed secrets
- Optional persisted unlock state
"""
