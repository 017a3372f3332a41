"""auth/ -- Authentication and authorization package for the registry.

Layer rule: auth/ imports from core/ and audit/ plus third-party libraries.
It does NOT import from api/ or cache/.
api/ imports from auth/, not the other way around.
"""
