"""
Server side of the CLI login handoff.

Design goals:
- A minted token reaches only the CLI process that started the login, exactly once.
- Every one-time artifact is redeemed through an atomic store transition.
- All state is in-process and short-lived; a restart invalidates pending logins.
"""
