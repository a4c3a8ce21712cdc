"""auth/ -- Identity and access-control package for AdminHub.

Layer rule: auth/ imports only stdlib + third-party libraries and core/.
It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
