"""auth/ -- Authentication and authorization package for RoleKeeper.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/, web/, or accounts/.
api/, web/ and accounts/ import from auth/, not the other way around.
"""
