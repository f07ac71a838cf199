"""
Tenant Data Import Engine

Bulk-loads external records (customers, tickets, agents, knowledge-base
articles) into a tenant's data store and sequences several imports into
dependency-ordered migration plans.

Supports:
- Declarative field mappings with transforms, defaults and conditions
- Exhaustive per-field validation with host-registered predicates
- Side-effect-free previews over a bounded sample
- Batched execution with pause, resume, cancel and per-record retry
- Migration plans with reference fixup across steps
"""

__version__ = "0.1.0"
