"""
Report amendment signals.
"""
from django.dispatch import Signal

# Sent by the notification task, after the workflow transaction committed.
# Delivery integrations (email, SMS, in-app inbox) connect here.
# Payload (ids, statuses and version numbers only, NO PHI):
#   - actor_id: user to notify
#   - event: amendment.created | amendment.approved | amendment.rejected |
#            amendment.applied | amendment.superseded
#   - payload: {'report_id', 'amendment_id', 'status', ...}
amendment_notification = Signal()
