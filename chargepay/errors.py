class ChargePayError(Exception):
    """Base class for errors raised by the charging session core."""


class InvalidRequest(ChargePayError):
    pass


class StationNotFound(ChargePayError):
    pass


class ConnectorNotFound(ChargePayError):
    pass


class ConnectorUnavailable(ChargePayError):
    """Connector is faulted or switched off by an operator."""


class ConnectorBusy(ChargePayError):
    """Another transaction is already PENDING or CHARGING on this connector."""


class NoPendingPayment(ChargePayError):
    """Start requested without a prior prepayment."""


class NoActiveSession(ChargePayError):
    """Stop requested with nothing PENDING or CHARGING."""


class AlreadySettled(ChargePayError):
    """Settlement requested for a transaction that is closed or being closed."""


class SettlementPersistenceFailed(ChargePayError):
    """The ledger could not be closed; cost and refund are not reconciled."""

    def __init__(self, transaction_id: str, cause: Exception):
        super().__init__(f"failed to persist settlement of {transaction_id}: {cause}")
        self.transaction_id = transaction_id
        self.cause = cause


class DeviceUnreachable(ChargePayError):
    pass


class PaymentError(ChargePayError):
    pass


class RefundFailed(PaymentError):
    pass


class NotificationFailed(ChargePayError):
    pass
