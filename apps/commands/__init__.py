"""
Commands App - operator commands over Redis Pub/Sub

Responsibilities:
- Subscribing to the command channel
- Validating commands against the CommandEvent schema
- Dispatching to the cycle scheduler, digest reporter and phrase lists
- Replying on the notification channel
"""
