"""Usage metering, credit ledger and voucher engine."""
