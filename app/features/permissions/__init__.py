"""
Permission management feature module.

Retreat-scoped RBAC: global roles, retreat memberships, a data-driven role
inheritance graph, time-bounded delegations and per-user overrides, combined
by ``PermissionService``.
"""
