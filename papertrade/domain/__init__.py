"""
Domain layer package.

Contains business logic: entities, value objects, domain services,
and port interfaces. No framework imports, no IO. Numerical work
relies on numpy and pandas only.
"""
