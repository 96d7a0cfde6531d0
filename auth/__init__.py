"""auth/ -- Identity and session package for Pecal.

Layer rule: auth/ imports only core/ + stdlib + third-party libraries.
It does NOT import from api/, workspace/, sharing/, or billing/.
api/ imports from auth/, not the other way around.
"""
