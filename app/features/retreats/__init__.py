"""
Retreat feature module.

Retreats, retreat memberships and the invitation workflow.
"""
