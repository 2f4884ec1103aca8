"""Docker Update Reconciler (DUR).

Brings standalone containers and compose services to a desired image:
 - content-identity comparison (tags are never trusted)
 - in-place recreate that keeps the container's launch configuration
 - drift protection for compose services changed by hand
 - append-only update history that drives interactive rollback
"""
