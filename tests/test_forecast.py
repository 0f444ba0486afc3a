"""Tests for the working-hours cost forecast."""

from datetime import date, datetime, time, timezone

import pytest

from kv_policy_harness.forecast import (
    build_forecast,
    federal_holidays,
    holidays_in_month,
    hours_per_workday,
    parse_clock,
    plan_cost,
    project_requests,
    workdays_in_month,
)


def test_fixed_date_holidays_move_off_weekends():
    # July 4, 2020 was a Saturday
    assert federal_holidays(2020)[date(2020, 7, 3)] == "Independence Day"
    # Christmas 2021 was a Saturday
    assert date(2021, 12, 24) in federal_holidays(2021)


def test_floating_holidays():
    holidays = federal_holidays(2025)
    assert holidays[date(2025, 11, 27)] == "Thanksgiving Day"
    assert holidays[date(2025, 5, 26)] == "Memorial Day"
    assert holidays[date(2025, 1, 20)] == "Martin Luther King Jr. Day"
    assert len(holidays) == 11


def test_new_year_observed_in_previous_december():
    # January 1, 2022 was a Saturday
    december = holidays_in_month(2021, 12)
    assert december[date(2021, 12, 31)] == "New Year's Day"
    assert list(holidays_in_month(2022, 1)) == [date(2022, 1, 17)]


def test_workdays_in_month():
    assert len(workdays_in_month(2025, 1, exclude_holidays=False)) == 23
    workdays = workdays_in_month(2025, 1)
    assert len(workdays) == 21
    assert date(2025, 1, 1) not in workdays
    assert all(day.weekday() < 5 for day in workdays)


@pytest.mark.parametrize("start, end, hours", [
    ("09:00", "17:00", 8.0),
    ("08:30", "17:15", 8.75),
    ("22:00", "06:00", 8.0),
    ("09:00", "09:00", 0.0),
])
def test_hours_per_workday(start, end, hours):
    assert hours_per_workday(parse_clock(start), parse_clock(end)) == hours


def test_parse_clock_rejects_garbage():
    assert parse_clock(" 7:05 ") == time(7, 5)
    with pytest.raises(ValueError):
        parse_clock("25:00")
    with pytest.raises(ValueError):
        parse_clock("noon")


def test_forecast_midway_through_second_day():
    forecast = build_forecast(2025, 1, now=datetime(2025, 1, 2, 13, 0), requests_used=10)

    assert forecast['workdays'] == 21
    assert forecast['total_hours'] == 168.0
    assert forecast['elapsed_hours'] == 4.0
    assert forecast['remaining_hours'] == 164.0
    assert forecast['projected_requests'] == pytest.approx(420.0)
    assert forecast['projected_overage_requests'] == pytest.approx(120.0)
    assert forecast['cost_to_date'] == pytest.approx(19.0)
    assert forecast['projected_cost'] == pytest.approx(23.8)
    assert [h['name'] for h in forecast['holidays']] == ["New Year's Day", "Martin Luther King Jr. Day"]


def test_forecast_before_month_start_projects_usage_so_far():
    forecast = build_forecast(2025, 3, now=datetime(2025, 2, 20, 12, 0), requests_used=50)

    assert forecast['elapsed_hours'] == 0.0
    assert forecast['projected_requests'] == 50.0
    assert forecast['percent_elapsed'] == 0.0


def test_forecast_after_month_end_is_fully_elapsed():
    forecast = build_forecast(2025, 1, now=datetime(2025, 3, 1, tzinfo=timezone.utc),
                              requests_used=600)

    assert forecast['elapsed_hours'] == forecast['total_hours']
    assert forecast['remaining_hours'] == 0.0
    assert forecast['projected_requests'] == pytest.approx(600.0)


def test_overnight_shift_counts_hours_after_midnight():
    forecast = build_forecast(2025, 1, now=datetime(2025, 1, 3, 2, 0),
                              workday_start="22:00", workday_end="06:00", exclude_holidays=False)

    # Jan 1 shift complete, Jan 2 shift four hours in
    assert forecast['hours_per_workday'] == 8.0
    assert forecast['elapsed_hours'] == 12.0


def test_zero_length_workday():
    forecast = build_forecast(2025, 1, now=datetime(2025, 1, 15), workday_start="09:00",
                              workday_end="09:00", requests_used=5)

    assert forecast['total_hours'] == 0.0
    assert forecast['percent_elapsed'] == 0.0
    assert forecast['projected_requests'] == 5.0


def test_plan_cost_is_monotonic():
    costs = [plan_cost(requests, 19.0, 300, 0.04) for requests in (0, 150, 300, 301, 1000)]
    assert costs == sorted(costs)
    assert costs[0] == costs[2] == 19.0


def test_project_requests_without_elapsed_time():
    assert project_requests(12, 0, 100) == 12.0
    assert project_requests(12, 6, 100) == 200.0


@pytest.mark.parametrize("kwargs", [
    {'month': 13},
    {'month': 0},
    {'requests_used': -1},
    {'overage_rate': -0.01},
    {'workday_start': "9am"},
])
def test_invalid_input(kwargs):
    options = {'year': 2025, 'month': 1, 'now': datetime(2025, 1, 2)}
    options.update(kwargs)
    with pytest.raises(ValueError):
        build_forecast(**options)
