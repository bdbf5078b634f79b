BPS_DENOMINATOR = 10000


def split(amount_minor: int, fee_bps: int):
    """Split a gross amount into (platform_fee_minor, payout_minor).

    Integer minor units only; the fee is rounded down so the creator never
    receives less than their share.
    """
    if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
        raise ValueError("amount_minor must be an integer number of minor units")
    if isinstance(fee_bps, bool) or not isinstance(fee_bps, int):
        raise ValueError("fee_bps must be an integer")
    if amount_minor < 0:
        raise ValueError("amount_minor cannot be negative")
    if not 0 <= fee_bps <= BPS_DENOMINATOR:
        raise ValueError("fee_bps must be between 0 and 10000")

    fee = amount_minor * fee_bps // BPS_DENOMINATOR
    return fee, amount_minor - fee
