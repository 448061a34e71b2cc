"""
Core reconciliation logic for Cassandra datacenters.

This package holds the control loop and its pure building blocks:
- Rack and seed topology planner
- Node lifecycle state machine
- Rolling operation sequencer
- Status projection
- Distributed locking so one pass runs per datacenter at a time
"""

# Import lazily to avoid circular dependencies at module load time
# Users should import directly from submodules:
# from cass_operator.core.topology import plan_topology
# from cass_operator.core.reconciler import Reconciler
