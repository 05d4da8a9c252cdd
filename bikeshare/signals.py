"""
Push notifications for state changes, so callers can subscribe instead of polling.

    from bikeshare.signals import reservation_transitioned

    @reservation_transitioned.connect
    def on_transition(reservation, old_status, new_status):
        ...

Signals are sent after the transaction commits.
"""

from blinker import Namespace

_signals = Namespace()

reservation_transitioned = _signals.signal('reservation-transitioned')
payment_settled = _signals.signal('payment-settled')
