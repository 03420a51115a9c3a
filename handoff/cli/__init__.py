"""
CLI side of the login handoff: a loopback callback listener, a poll client, and the
local credential file the resulting token is persisted to.
"""
