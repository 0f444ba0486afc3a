"""
AI Cost Forecast

Projects a month's AI-assistant request usage and cost from the usage so far.
Time is measured in working hours: weekdays (optionally minus US federal
holidays) multiplied by the length of the working day. The plan charges a
base monthly cost that includes a number of requests, plus an overage rate
for every request beyond that.
"""

import calendar
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

from .settings import (
    FORECAST_BASE_COST,
    FORECAST_INCLUDED_REQUESTS,
    FORECAST_OVERAGE_RATE,
    FORECAST_WORKDAY_END,
    FORECAST_WORKDAY_START,
)

MONDAY, THURSDAY = 0, 3


def nth_weekday(year: int, month: int, weekday: int, n: int) -> date:
    """The n-th given weekday of a month (n starts at 1)."""
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + 7 * (n - 1))


def last_weekday(year: int, month: int, weekday: int) -> date:
    last = date(year, month, calendar.monthrange(year, month)[1])
    return last - timedelta(days=(last.weekday() - weekday) % 7)


def observed(day: date) -> date:
    """Saturday holidays are observed on Friday, Sunday holidays on Monday."""
    if day.weekday() == 5:
        return day - timedelta(days=1)
    if day.weekday() == 6:
        return day + timedelta(days=1)
    return day


def federal_holidays(year: int) -> Dict[date, str]:
    """
    Observed US federal holidays for the holidays of ``year``.

    An observed date can fall outside ``year``: New Year's Day on a Saturday
    is observed on December 31 of the previous year.
    """
    holidays = {
        observed(date(year, 1, 1)): "New Year's Day",
        nth_weekday(year, 1, MONDAY, 3): "Martin Luther King Jr. Day",
        nth_weekday(year, 2, MONDAY, 3): "Presidents Day",
        last_weekday(year, 5, MONDAY): "Memorial Day",
        observed(date(year, 6, 19)): "Juneteenth",
        observed(date(year, 7, 4)): "Independence Day",
        nth_weekday(year, 9, MONDAY, 1): "Labor Day",
        nth_weekday(year, 10, MONDAY, 2): "Columbus Day",
        observed(date(year, 11, 11)): "Veterans Day",
        nth_weekday(year, 11, THURSDAY, 4): "Thanksgiving Day",
        observed(date(year, 12, 25)): "Christmas Day",
    }
    return holidays


def holidays_in_month(year: int, month: int) -> Dict[date, str]:
    """Observed holidays dated in the given month, including spill-over from adjacent years."""
    found = {}
    for holiday_year in (year - 1, year, year + 1):
        for day, name in federal_holidays(holiday_year).items():
            if day.year == year and day.month == month:
                found[day] = name
    return dict(sorted(found.items()))


def workdays_in_month(year: int, month: int, exclude_holidays: bool = True) -> List[date]:
    holidays = holidays_in_month(year, month) if exclude_holidays else {}
    days = calendar.monthrange(year, month)[1]
    return [
        date(year, month, d) for d in range(1, days + 1)
        if date(year, month, d).weekday() < 5 and date(year, month, d) not in holidays
    ]


def parse_clock(value: str) -> time:
    """Parse an ``HH:MM`` time of day."""
    try:
        return datetime.strptime(value.strip(), "%H:%M").time()
    except ValueError:
        raise ValueError(f"Invalid time '{value}', expected HH:MM") from None


def hours_per_workday(start: time, end: time) -> float:
    """Length of the working day; an end before the start wraps past midnight."""
    start_minutes = start.hour * 60 + start.minute
    end_minutes = end.hour * 60 + end.minute
    return ((end_minutes - start_minutes) % (24 * 60)) / 60


def elapsed_hours(workdays: List[date], now: datetime, start: time, hours_per_day: float) -> float:
    """
    Working hours already elapsed at ``now``.

    Each workday contributes the time between its start and ``now``, clamped
    to ``[0, hours_per_day]``: past days count in full, future days not at all.
    """
    if now.tzinfo is not None:
        now = now.replace(tzinfo=None)
    total = 0.0
    for day in workdays:
        shift_start = datetime.combine(day, start)
        worked = (now - shift_start).total_seconds() / 3600
        total += min(max(worked, 0.0), hours_per_day)
    return total


def project_requests(used: float, elapsed: float, total: float) -> float:
    """Extrapolate the current request rate over all working hours of the month."""
    if elapsed <= 0:
        return float(used)
    return used / elapsed * total


def plan_cost(requests: float, base_cost: float, included: float, overage_rate: float) -> float:
    """Base cost plus the overage rate for every request beyond the included amount."""
    return base_cost + max(0.0, requests - included) * overage_rate


def build_forecast(year: int, month: int, now: Optional[datetime] = None,
                   workday_start: str = FORECAST_WORKDAY_START,
                   workday_end: str = FORECAST_WORKDAY_END,
                   requests_used: float = 0,
                   included_requests: float = FORECAST_INCLUDED_REQUESTS,
                   base_cost: float = FORECAST_BASE_COST,
                   overage_rate: float = FORECAST_OVERAGE_RATE,
                   exclude_holidays: bool = True) -> Dict[str, Any]:
    """
    Forecast request usage and cost for a month.

    Args:
        year: Forecast year
        month: Forecast month (1-12)
        now: Point in time the usage was read (default: current local time)
        workday_start: Start of the working day, HH:MM
        workday_end: End of the working day, HH:MM
        requests_used: Requests used so far this month
        included_requests: Requests included in the base cost
        base_cost: Monthly base cost
        overage_rate: Cost per request beyond the included amount
        exclude_holidays: Do not count US federal holidays as workdays

    Returns:
        Dictionary with calendar figures, elapsed/remaining hours, projected
        requests and cost to date / projected cost
    """
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}")
    for label, value in (('requests_used', requests_used), ('included_requests', included_requests),
                         ('base_cost', base_cost), ('overage_rate', overage_rate)):
        if value < 0:
            raise ValueError(f"{label} must not be negative")

    now = now or datetime.now()
    start = parse_clock(workday_start)
    end = parse_clock(workday_end)
    hours_per_day = hours_per_workday(start, end)

    workdays = workdays_in_month(year, month, exclude_holidays)
    holidays = holidays_in_month(year, month) if exclude_holidays else {}

    total_hours = len(workdays) * hours_per_day
    elapsed = elapsed_hours(workdays, now, start, hours_per_day)
    remaining = max(0.0, total_hours - elapsed)
    projected = project_requests(requests_used, elapsed, total_hours)

    return {
        'year': year,
        'month': month,
        'now': now.isoformat(),
        'workday_start': start.strftime("%H:%M"),
        'workday_end': end.strftime("%H:%M"),
        'hours_per_workday': hours_per_day,
        'workdays': len(workdays),
        'holidays': [{'date': day.isoformat(), 'name': name} for day, name in holidays.items()],
        'total_hours': total_hours,
        'elapsed_hours': elapsed,
        'remaining_hours': remaining,
        'percent_elapsed': (elapsed / total_hours * 100) if total_hours else 0.0,
        'requests_used': requests_used,
        'projected_requests': projected,
        'included_requests': included_requests,
        'projected_overage_requests': max(0.0, projected - included_requests),
        'cost_to_date': plan_cost(requests_used, base_cost, included_requests, overage_rate),
        'projected_cost': plan_cost(projected, base_cost, included_requests, overage_rate),
    }


def print_forecast(forecast: Dict[str, Any]) -> None:
    print(f"\n{'='*70}")
    print(f"AI COST FORECAST: {calendar.month_name[forecast['month']]} {forecast['year']}")
    print(f"{'='*70}")
    print(f"Workdays: {forecast['workdays']} x {forecast['hours_per_workday']:.2f}h "
          f"({forecast['workday_start']}-{forecast['workday_end']}) = {forecast['total_hours']:.1f}h")
    for holiday in forecast['holidays']:
        print(f"  ○ {holiday['date']} {holiday['name']}")
    print(f"Elapsed:   {forecast['elapsed_hours']:.1f}h ({forecast['percent_elapsed']:.1f}%)")
    print(f"Remaining: {forecast['remaining_hours']:.1f}h")
    print(f"\nRequests used:      {forecast['requests_used']:,.0f} "
          f"(included: {forecast['included_requests']:,.0f})")
    print(f"Projected requests: {forecast['projected_requests']:,.0f}")
    print(f"\nCost to date:   ${forecast['cost_to_date']:,.2f}")
    print(f"Projected cost: ${forecast['projected_cost']:,.2f}")
    if forecast['projected_overage_requests'] > 0:
        print(f"⚠ Projected to exceed the included requests by "
              f"{forecast['projected_overage_requests']:,.0f}")
    print(f"{'='*70}")
