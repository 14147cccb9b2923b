from datetime import date, datetime
from certdesk.shared.time import fmt_dt, fmt_long_date

def test_fmt_dt_no_seconds():
    dt = datetime(2024, 1, 2, 3, 4, 5)
    out = fmt_dt(dt)
    assert out.endswith('03:04')
    assert out.count(':') == 1


def test_fmt_long_date_has_no_padding():
    assert fmt_long_date(date(2025, 3, 3)) == 'March 3, 2025'
    assert fmt_long_date(datetime(2025, 12, 25, 8, 0)) == 'December 25, 2025'
    assert fmt_long_date(None) == ''
