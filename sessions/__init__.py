"""sessions/ -- Server-side session records keyed by an opaque cookie token.

Layer rule: sessions/ imports only stdlib, third-party libraries, and core/.
It knows nothing about users or authentication; auth/ stores its identity
fields inside the session data mapping.
"""
