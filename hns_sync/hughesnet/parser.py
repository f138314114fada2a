"""Pure HTML extraction for portal pages.

Nothing here touches the network or the store; every function takes page
HTML and returns plain values so it can be exercised against saved pages.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from .dates import parse_us_date, parse_us_datetime
from .models import OrderRecord, default_duration_for

_BS_PARSER = "html.parser"

_SERVICE_LINK_ID_RE = re.compile(r"viewservice\.jsp\?[^\"'\s>]*?\bid=(\d+)", re.IGNORECASE)
_EXPLICIT_ID_RE = re.compile(r"[?&]id=(\d{8})\b", re.IGNORECASE)
_TYPE_LABEL_RE = re.compile(r"(?:Order|Service)\s*Type\s*[:.]?\s*(Re-Install|Install|Repair|Upgrade)", re.IGNORECASE)
_ADDRESS_TEXT_RE = re.compile(r"Address:\s*(.*?)\s+(?:City|County|State)", re.IGNORECASE)
_SERVICE_LOCATION_RE = re.compile(r"Service Location:?\s*(.*?)\s+(?:City|State|Zip)", re.IGNORECASE)
_CLOCK_RE = re.compile(r"(\d{1,2}:\d{2})")
_WIFI_RE = re.compile(r"\b(WIFI|WI-FI|MESH)\b")
_WIFI_INSTALL_RE = re.compile(r"\b(INST|INSTALL|INSTALLATION|EXTEND|EXTENDER|EXT)\b")

LOGIN_MARKERS = ('name="Password"', "login.jsp?UsrAction=submit")

ARRIVAL_LABEL = "Arrival On Site"
DEPARTURE_COMPLETE_LABEL = "Departure Complete"
DEPARTURE_INCOMPLETE_LABEL = "Departure Incomplete"


@dataclass(frozen=True)
class MenuLink:
    url: str
    text: str


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", _BS_PARSER)


def is_login_page(html: str) -> bool:
    return any(marker in (html or "") for marker in LOGIN_MARKERS)


def extract_ids(html: str) -> List[str]:
    """Order ids from service-order links and explicit 8-digit ``id=`` params, first-seen order."""

    clean = (html or "").replace("&amp;", "&")
    seen: dict[str, None] = {}
    for pattern in (_SERVICE_LINK_ID_RE, _EXPLICIT_ID_RE):
        for match in pattern.finditer(clean):
            seen.setdefault(match.group(1), None)
    return list(seen)


def extract_menu_links(html: str, base_url: str) -> List[MenuLink]:
    links: List[MenuLink] = []
    for anchor in _soup(html).find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.lower().startswith("javascript") or href.startswith("#"):
            continue
        if ".jsp" not in href and "SoSearch" not in href:
            continue
        links.append(MenuLink(url=urljoin(base_url + "/", href), text=anchor.get_text(strip=True)))
    return links


def extract_next_link(html: str, current_url: str) -> str | None:
    for anchor in _soup(html).find_all("a", href=True):
        text = anchor.get_text(" ", strip=True).lower()
        if "next" not in text and ">" not in text:
            continue
        href = anchor["href"].strip()
        if not href or href.lower().startswith("javascript"):
            return None
        return urljoin(current_url, href)
    return None


def extract_frame_sources(html: str, page_url: str) -> List[str]:
    sources: List[str] = []
    for frame in _soup(html).find_all(["frame", "iframe"]):
        src = (frame.get("src") or "").strip()
        if src:
            sources.append(urljoin(page_url, src))
    return sources


def _input_value(soup: BeautifulSoup, *names: str) -> str:
    for name in names:
        element = soup.find("input", attrs={"name": name})
        if isinstance(element, Tag):
            value = (element.get("value") or "").strip()
            if value:
                return value
    return ""


def _scan_forward(html: str, label: str, pattern: str) -> str:
    idx = html.find(label)
    if idx == -1:
        return ""
    match = re.search(pattern, html[idx : idx + 500])
    return match.group(1).strip() if match else ""


def _labelled_clock(soup: BeautifulSoup, *labels: str) -> str:
    for cell in soup.select("td.displaytextlbl"):
        text = cell.get_text(" ", strip=True)
        if not any(label in text for label in labels):
            continue
        value_cell = cell.find_next_sibling("td", class_="displaytext")
        if value_cell is None:
            continue
        match = _CLOCK_RE.search(value_cell.get_text(" ", strip=True).replace("\xa0", " "))
        if match:
            return match.group(1)
    return ""


def _event_timestamps(soup: BeautifulSoup, label: str) -> List[datetime]:
    found: List[datetime] = []
    for cell in soup.select(".SearchUtilData"):
        text = cell.get_text(" ", strip=True)
        if label not in text:
            continue
        parsed = parse_us_datetime(text)
        if parsed is None:
            previous = cell.find_previous_sibling(class_="SearchUtilData")
            if previous is not None:
                parsed = parse_us_datetime(previous.get_text(" ", strip=True))
        if parsed is not None:
            found.append(parsed)
    return found


def _detect_job_type(body_text: str) -> str:
    match = _TYPE_LABEL_RE.search(body_text)
    if match:
        found = match.group(1).lower()
        if "re-install" in found:
            return "Re-Install"
        if "install" in found:
            return "Install"
        if "upgrade" in found:
            return "Upgrade"
        return "Repair"
    if "Service Order #" in body_text:
        for candidate in ("Re-Install", "Upgrade", "Repair", "Install"):
            if re.search(candidate, body_text, re.IGNORECASE):
                return candidate
    return "Repair"


def _has_voip_icon(soup: BeautifulSoup) -> bool:
    for image in soup.find_all("img"):
        src = image.get("src") or ""
        if "icoPhoneVoipMed.gif" in src:
            return True
        if (image.get("title") or "").upper() == "VOIP" or (image.get("alt") or "").upper() == "VOIP":
            return True
    return False


def _same_day(values: Iterable[datetime], reference: datetime | None) -> List[datetime]:
    if reference is None:
        return []
    return [value for value in values if value.date() == reference.date()]


def parse_order_page(html: str, order_id: str) -> OrderRecord:
    """Best-effort extraction of one order detail page; missing fields stay empty."""

    soup = _soup(html)
    body_text = soup.get_text(" ", strip=True)
    order = OrderRecord(id=str(order_id))

    address = _input_value(soup, "FLD_SO_Address1", "f_address", "txtAddress")
    if not address:
        match = _ADDRESS_TEXT_RE.search(body_text) or _SERVICE_LOCATION_RE.search(body_text)
        if match:
            address = re.split(r"county:", match.group(1), flags=re.IGNORECASE)[0].strip()
    order.address = address.title()
    order.city = (_input_value(soup, "f_city") or _scan_forward(html, "City:", r">([^<]+)<")).title()
    order.state = _input_value(soup, "f_state") or _scan_forward(html, "State:", r">([A-Z]{2})<")
    order.zip = _input_value(soup, "f_zip") or _scan_forward(html, "Zip:", r">(\d{5})<")

    scheduled = (
        _input_value(soup, "f_sched_date")
        or _scan_forward(html, "Confirm Schedule Date", r"(\d{1,2}/\d{1,2}/\d{2,4})")
        or _scan_forward(html, "Date:", r"(\d{1,2}/\d{1,2}/\d{2,4})")
    )
    order.scheduled_date = parse_us_date(scheduled)

    order.begin_time = (
        _input_value(soup, "f_begin_time")
        or _labelled_clock(soup, "Arrival Time", "Arrival Window")
        or _labelled_clock(soup, "Schd Est. Begin Time")
        or _scan_forward(html, "Time:", r"(\d{1,2}:\d{2}\s*(?:AM|PM)?)")
    )

    order.job_type = _detect_job_type(body_text)
    order.base_duration_minutes = default_duration_for(order.job_type)

    upper_body = body_text.upper()
    order.has_pole_mount = "CON NON-STD CHARGE NEW POLE" in upper_body
    order.has_wifi_extender = "WI-FI INSTALLATION [TASK]" in upper_body or any(
        _WIFI_RE.search(cell.get_text(strip=True).upper())
        and _WIFI_INSTALL_RE.search(cell.get_text(strip=True).upper())
        for cell in soup.select(".SearchUtilData")
    )
    order.has_voip = "INSTALL, VOIP PHONE [TASK]" in upper_body or _has_voip_icon(soup)

    arrivals = _event_timestamps(soup, ARRIVAL_LABEL)
    completes = _event_timestamps(soup, DEPARTURE_COMPLETE_LABEL)
    incompletes = _event_timestamps(soup, DEPARTURE_INCOMPLETE_LABEL)
    activity = arrivals + completes + incompletes
    # Split visits: only events on the latest activity day describe the current visit.
    reference = max(activity) if activity else None

    same_day_completes = _same_day(completes, reference)
    same_day_incompletes = _same_day(incompletes, reference)
    same_day_arrivals = _same_day(arrivals, reference)
    order.departure_complete_ts = max(same_day_completes) if same_day_completes else None
    order.departure_incomplete_ts = max(same_day_incompletes) if same_day_incompletes else None
    if same_day_arrivals:
        order.arrival_ts = min(same_day_arrivals)
    elif arrivals:
        order.arrival_ts = arrivals[0]

    return order
