"""
ITSM Approval Engine

Versioned, multi-step sequential approval workflows whose steps are routed
to approvers by explicit user lists or RBAC role and group membership.
"""

__version__ = "1.0.0"
