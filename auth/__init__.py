"""auth/ -- Authentication and access control package for Gatehouse.

Layer rule: auth/ imports stdlib, third-party libraries, core/, and sessions/.
It does NOT import from api/ or web/.
api/ and web/ import from auth/, not the other way around.
"""
