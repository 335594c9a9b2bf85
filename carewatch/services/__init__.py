"""CareWatch services.

- Alert Engine: classifies silence, suppresses duplicates, dispatches
  notifications, escalates and runs the emergency confirmation protocol
- Audit Service: hash-chained audit trail for every emergency-path action
"""
