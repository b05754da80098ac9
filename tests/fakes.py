"""
In-memory collaborators for tests.
"""


class RecordingNotifier:
    """Notifier that keeps every email in memory."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def _record(self, *args):
        self.sent.append(args)
        if self.fail:
            raise ConnectionError("smtp down")

    def send_low_balance_warning(self, email, balance):
        self._record("low_balance", email, balance)

    def send_service_paused(self, email, service_name, balance):
        self._record("paused", email, service_name, balance)

    def send_token_expiry_notice(self, email, amount):
        self._record("expired", email, amount)

    def send_credits_expiring_soon(self, email, amount, expires_at):
        self._record("expiring_soon", email, amount, expires_at)

    def kinds(self):
        return [entry[0] for entry in self.sent]


class RecordingPauser:

    def __init__(self, fail: bool = False):
        self.paused = []
        self.fail = fail

    def pause(self, resource):
        if self.fail:
            raise RuntimeError("provider unavailable")
        self.paused.append(resource.id)
