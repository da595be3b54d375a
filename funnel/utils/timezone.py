"""
Timezone utilities for follow-up scheduling.
Maps country codes and localized country names to IANA zones, knows which
countries keep a Friday/Saturday weekend, and decides whether a lead can be
messaged right now.

Window arithmetic is verified for the default 09:00-21:00 window. Other
start/end hours are accepted but the sleeping-hours (22:00-08:00) and weekend
branches were written against the default and are not verified beyond it.
"""
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_START_HOUR = 9
DEFAULT_END_HOUR = 21
SLEEP_START_HOUR = 22
SLEEP_END_HOUR = 8

COUNTRY_TIMEZONE_MAP = {
    # Europe
    "UK": "Europe/London",
    "GB": "Europe/London",
    "DE": "Europe/Berlin",
    "FR": "Europe/Paris",
    "IT": "Europe/Rome",
    "ES": "Europe/Madrid",
    "NL": "Europe/Amsterdam",
    "BE": "Europe/Brussels",
    "AT": "Europe/Vienna",
    "CH": "Europe/Zurich",
    "PL": "Europe/Warsaw",
    "CZ": "Europe/Prague",
    "SE": "Europe/Stockholm",
    "NO": "Europe/Oslo",
    "DK": "Europe/Copenhagen",
    "FI": "Europe/Helsinki",
    "IE": "Europe/Dublin",
    "PT": "Europe/Lisbon",
    "GR": "Europe/Athens",
    "RO": "Europe/Bucharest",
    "HU": "Europe/Budapest",
    "UA": "Europe/Kyiv",
    "RU": "Europe/Moscow",
    "TR": "Europe/Istanbul",
    # Middle East
    "SA": "Asia/Riyadh",
    "AE": "Asia/Dubai",
    "QA": "Asia/Qatar",
    "KW": "Asia/Kuwait",
    "BH": "Asia/Bahrain",
    "OM": "Asia/Muscat",
    "JO": "Asia/Amman",
    "LB": "Asia/Beirut",
    "IL": "Asia/Jerusalem",
    "IQ": "Asia/Baghdad",
    "IR": "Asia/Tehran",
    "EG": "Africa/Cairo",
    # Americas
    "US": "America/New_York",
    "CA": "America/Toronto",
    "MX": "America/Mexico_City",
    "BR": "America/Sao_Paulo",
    "AR": "America/Argentina/Buenos_Aires",
    "CO": "America/Bogota",
    "CL": "America/Santiago",
    # Asia Pacific
    "AU": "Australia/Sydney",
    "NZ": "Pacific/Auckland",
    "JP": "Asia/Tokyo",
    "KR": "Asia/Seoul",
    "CN": "Asia/Shanghai",
    "HK": "Asia/Hong_Kong",
    "SG": "Asia/Singapore",
    "MY": "Asia/Kuala_Lumpur",
    "TH": "Asia/Bangkok",
    "VN": "Asia/Ho_Chi_Minh",
    "PH": "Asia/Manila",
    "ID": "Asia/Jakarta",
    "IN": "Asia/Kolkata",
    "PK": "Asia/Karachi",
    # Africa
    "ZA": "Africa/Johannesburg",
    "NG": "Africa/Lagos",
    "KE": "Africa/Nairobi",
    "MA": "Africa/Casablanca",
    "DZ": "Africa/Algiers",
    "TN": "Africa/Tunis",
    "LY": "Africa/Tripoli",
}

# Localized country names (tr, en, ar, fr) -> ISO code
COUNTRY_NAME_TO_CODE = {
    # Turkish
    "turkey": "TR", "türkiye": "TR", "turkiye": "TR", "almanya": "DE", "fransa": "FR",
    "ingiltere": "GB", "hollanda": "NL", "belçika": "BE", "avusturya": "AT",
    "isviçre": "CH", "ispanya": "ES", "italya": "IT", "yunanistan": "GR",
    "polonya": "PL", "romanya": "RO", "macaristan": "HU", "ukrayna": "UA",
    "rusya": "RU", "suudi arabistan": "SA", "birleşik arap emirlikleri": "AE",
    "bae": "AE", "katar": "QA", "kuveyt": "KW", "mısır": "EG", "irak": "IQ",
    "ürdün": "JO", "lübnan": "LB", "israil": "IL", "fas": "MA", "cezayir": "DZ",
    "tunus": "TN", "libya": "LY", "güney afrika": "ZA", "nijerya": "NG",
    "avustralya": "AU", "kanada": "CA", "brezilya": "BR", "meksika": "MX",
    "arjantin": "AR", "japonya": "JP", "güney kore": "KR", "çin": "CN",
    "hindistan": "IN",
    # English
    "germany": "DE", "deutschland": "DE", "france": "FR", "united kingdom": "GB",
    "england": "GB", "scotland": "GB", "wales": "GB", "great britain": "GB",
    "united states": "US", "usa": "US", "america": "US", "saudi arabia": "SA",
    "uae": "AE", "emirates": "AE", "united arab emirates": "AE", "dubai": "AE",
    "qatar": "QA", "kuwait": "KW", "egypt": "EG", "russia": "RU", "ukraine": "UA",
    "netherlands": "NL", "holland": "NL", "belgium": "BE", "austria": "AT",
    "switzerland": "CH", "sweden": "SE", "norway": "NO", "denmark": "DK",
    "finland": "FI", "ireland": "IE", "portugal": "PT", "spain": "ES",
    "italy": "IT", "greece": "GR", "poland": "PL", "romania": "RO",
    "hungary": "HU", "czech republic": "CZ", "czechia": "CZ", "australia": "AU",
    "canada": "CA", "brazil": "BR", "mexico": "MX", "argentina": "AR",
    "colombia": "CO", "chile": "CL", "japan": "JP", "south korea": "KR",
    "korea": "KR", "china": "CN", "india": "IN", "pakistan": "PK", "iran": "IR",
    "iraq": "IQ", "jordan": "JO", "lebanon": "LB", "israel": "IL",
    "morocco": "MA", "algeria": "DZ", "tunisia": "TN", "south africa": "ZA",
    "nigeria": "NG", "kenya": "KE",
    # Arabic
    "السعودية": "SA", "الإمارات": "AE", "دبي": "AE", "قطر": "QA", "الكويت": "KW",
    "البحرين": "BH", "عمان": "OM", "مصر": "EG", "العراق": "IQ", "الأردن": "JO",
    "لبنان": "LB", "المغرب": "MA", "الجزائر": "DZ", "تونس": "TN", "ليبيا": "LY",
    "تركيا": "TR", "ألمانيا": "DE", "فرنسا": "FR", "بريطانيا": "GB",
    # French
    "allemagne": "DE", "royaume-uni": "GB", "angleterre": "GB", "pays-bas": "NL",
    "belgique": "BE", "autriche": "AT", "suisse": "CH", "espagne": "ES",
    "italie": "IT", "grèce": "GR", "pologne": "PL", "roumanie": "RO",
    "hongrie": "HU", "turquie": "TR", "arabie saoudite": "SA",
    "émirats arabes unis": "AE", "égypte": "EG", "maroc": "MA", "algérie": "DZ",
    "tunisie": "TN", "afrique du sud": "ZA",
}

# Friday/Saturday weekend
FRIDAY_WEEKEND_COUNTRIES = frozenset({
    "SA", "AE", "QA", "KW", "BH", "OM", "EG", "IQ", "JO", "LY", "DZ",
})

# datetime.weekday()
FRIDAY, SATURDAY, SUNDAY = 4, 5, 6


@dataclass
class MessagingWindowStatus:
    can_send: bool
    current_hour: int
    current_day: str
    is_weekend: bool
    wait_hours: int
    reason: str

    def to_dict(self) -> dict:
        return asdict(self)


def get_country_code(country: Optional[str]) -> Optional[str]:
    """ISO code from an ISO code or a localized country name."""
    if not country:
        return None
    upper = country.strip().upper()
    if upper in COUNTRY_TIMEZONE_MAP:
        return upper
    return COUNTRY_NAME_TO_CODE.get(country.strip().lower())


def get_timezone_from_country(country: Optional[str]) -> Optional[str]:
    code = get_country_code(country)
    if not code:
        return None
    return COUNTRY_TIMEZONE_MAP.get(code)


def is_friday_weekend_country(country_code: Optional[str]) -> bool:
    return bool(country_code) and country_code.upper() in FRIDAY_WEEKEND_COUNTRIES


def get_local_time(timezone_name: str, now: Optional[datetime] = None) -> datetime:
    """Local time in a zone. Unknown zones fall back to UTC."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    try:
        return now.astimezone(ZoneInfo(timezone_name))
    except (ZoneInfoNotFoundError, ValueError):
        return now.astimezone(timezone.utc)


def is_weekend_in_country(local: datetime, country_code: Optional[str]) -> bool:
    day = local.weekday()
    if is_friday_weekend_country(country_code):
        return day in (FRIDAY, SATURDAY)
    return day in (SATURDAY, SUNDAY)


def get_messaging_window_status(
    timezone_name: str,
    country_code: Optional[str] = None,
    start_hour: int = DEFAULT_START_HOUR,
    end_hour: int = DEFAULT_END_HOUR,
    avoid_weekends: bool = True,
    now: Optional[datetime] = None,
) -> MessagingWindowStatus:
    """
    Whether a lead in this zone can be messaged now, and if not how many whole
    hours to wait. Checks sleeping hours, the early-morning buffer, after-hours
    rollover, then the weekend push.
    """
    local = get_local_time(timezone_name, now)
    hour = local.hour
    day_name = local.strftime("%A")
    weekend = is_weekend_in_country(local, country_code)

    can_send = True
    wait_hours = 0
    reason = "OK to send"

    if hour >= SLEEP_START_HOUR or hour < SLEEP_END_HOUR:
        can_send = False
        wait_hours = (24 - hour) + start_hour if hour >= SLEEP_START_HOUR else start_hour - hour
        reason = f"Sleeping hours ({hour}:00 local) - wait until {start_hour}:00"
    elif hour < start_hour:
        can_send = False
        wait_hours = start_hour - hour
        reason = f"Early morning ({hour}:00 local) - wait until {start_hour}:00"
    elif hour >= end_hour:
        can_send = False
        wait_hours = (24 - hour) + start_hour
        reason = f"After hours ({hour}:00 local) - wait until tomorrow {start_hour}:00"

    if can_send and avoid_weekends and weekend:
        day = local.weekday()
        if is_friday_weekend_country(country_code):
            if day == FRIDAY:
                wait_hours = max(wait_hours, 24 + (start_hour - hour))
            elif day == SATURDAY:
                wait_hours = max(
                    wait_hours, start_hour - hour + (24 if hour >= start_hour else 0)
                )
        else:
            if day == SATURDAY:
                wait_hours = max(wait_hours, 48 - hour + start_hour)
            elif day == SUNDAY:
                wait_hours = max(wait_hours, 24 - hour + start_hour)

        if wait_hours > 0:
            can_send = False
            reason = f"Weekend ({day_name}) - postponing to next business day"

    return MessagingWindowStatus(
        can_send=can_send,
        current_hour=hour,
        current_day=day_name,
        is_weekend=weekend,
        wait_hours=wait_hours,
        reason=reason,
    )


def calculate_optimal_send_time(
    timezone_name: Optional[str],
    delay_hours: float,
    country_code: Optional[str] = None,
    start_hour: int = DEFAULT_START_HOUR,
    end_hour: int = DEFAULT_END_HOUR,
    avoid_weekends: bool = True,
    now: Optional[datetime] = None,
) -> datetime:
    """
    UTC send time for a nudge requested `delay_hours` from now, pushed into the
    lead's local window and past their weekend. Without a zone the delay is used as-is.
    """
    now = now or datetime.now(timezone.utc)
    send_time = now + timedelta(hours=delay_hours)
    if not timezone_name:
        return send_time

    hour = get_local_time(timezone_name, send_time).hour
    if hour < start_hour:
        send_time += timedelta(hours=start_hour - hour)
    elif hour >= end_hour or hour >= SLEEP_START_HOUR:
        send_time += timedelta(hours=(24 - hour) + start_hour)

    if avoid_weekends:
        day = get_local_time(timezone_name, send_time).weekday()
        if is_friday_weekend_country(country_code):
            if day == FRIDAY:
                send_time += timedelta(hours=48)
            elif day == SATURDAY:
                send_time += timedelta(hours=24)
        else:
            if day == SATURDAY:
                send_time += timedelta(hours=48)
            elif day == SUNDAY:
                send_time += timedelta(hours=24)

        # Rollover can land before the start hour
        hour = get_local_time(timezone_name, send_time).hour
        if hour < start_hour:
            send_time += timedelta(hours=start_hour - hour)

    return send_time


def get_timezone_context(
    country: Optional[str],
    existing_timezone: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Local-time summary handed to the AI service with every request."""
    country_code = get_country_code(country)
    tz_name = existing_timezone or get_timezone_from_country(country)

    if not tz_name:
        return {
            "timezone": None,
            "country_code": None,
            "local_time": "Unknown",
            "local_day": "Unknown",
            "is_weekend": False,
            "is_messaging_hours": True,
            "hours_until_next_window": 0,
        }

    local = get_local_time(tz_name, now)
    status = get_messaging_window_status(tz_name, country_code, now=now)
    return {
        "timezone": tz_name,
        "country_code": country_code,
        "local_time": local.strftime("%H:%M"),
        "local_day": local.strftime("%A"),
        "is_weekend": status.is_weekend,
        "is_messaging_hours": status.can_send,
        "hours_until_next_window": status.wait_hours,
    }
