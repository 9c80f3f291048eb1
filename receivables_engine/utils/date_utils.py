"""Date manipulation utilities"""

from datetime import date, datetime, timedelta, timezone


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def add_business_days(from_date: date, days: int) -> date:
    """Add business days to a date, skipping weekends (doesn't account for bank holidays)"""
    current = from_date
    remaining = days
    while remaining > 0:
        current += timedelta(days=1)
        if current.weekday() < 5:
            remaining -= 1
    return current


def effective_date_for(originated_at: datetime, lead_days: int) -> date:
    """ACH effective date: lead_days business days after origination, never a weekend"""
    effective = add_business_days(originated_at.date(), lead_days)
    while effective.weekday() >= 5:
        effective += timedelta(days=1)
    return effective
