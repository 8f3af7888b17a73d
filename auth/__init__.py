"""auth/ -- Request authentication for PostureWatch.

Layer rule: auth/ imports core/ and monitor/ models plus third-party
libraries. It does NOT import from api/ or alerts/.
api/ imports from auth/, not the other way around.
"""
