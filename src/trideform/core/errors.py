"""Error types shared across trideform."""


class ContractViolation(ValueError):
    """A caller broke an API contract (bad lengths, unknown ids, reuse after dispose...).

    These are programmer errors. They are raised at the call site and never
    absorbed or retried.
    """
