"""Fleet Reconciler.

Single-process control loop that drives a fleet of worker units toward a
declared desired state:
 - unit registry with snapshot reads
 - startup / liveness / readiness probes (HTTP, TCP, exec)
 - replica reconciliation with surge / unavailability bounds
 - rolling updates with pause, resume and rollback

The implementation is intentionally small so it can be audited and explained.
"""
