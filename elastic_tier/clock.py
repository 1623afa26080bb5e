# Wall clock helpers. All fleet timestamps are IST-zoned datetimes.

from datetime import datetime
from zoneinfo import ZoneInfo


IST = ZoneInfo("Asia/Kolkata")

def now_ist_dt():
    return datetime.now(IST)

def now_ist_iso():
    return datetime.now(IST).isoformat()

def seconds_since(then, now):
    if then is None:
        return None
    return (now - then).total_seconds()
