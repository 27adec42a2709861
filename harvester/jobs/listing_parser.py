"""Turns a raw listing detail payload into a ``ParsedListing``.

The detail endpoint returns a handful of top-level sections (``seo``,
``share``, ``contact``, ``analytics``, ``city``, ``webengage``) plus a list of
``sections`` whose widgets carry most of the structured facts. Widgets may
nest further widget lists inside modal pages, which are walked recursively.
"""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any

from harvester.core.text import as_text, normalize_digits, parse_number
from harvester.schemas.listings import ParsedAttribute, ParsedListing, ParsedMedia

WIDGET_PREFIX = "type.googleapis.com/widgets."

_INVISIBLE_RE = re.compile("[‌‎‏]")
_SPACE_RE = re.compile(r"\s+")


def normalize_label(value: str) -> str:
    return _SPACE_RE.sub(" ", _INVISIBLE_RE.sub("", value)).strip()


def normalize_word(value: str) -> str:
    value = value.replace("ي", "ی").replace("ك", "ک").replace("ۀ", "ه")
    value = re.sub(r"[^؀-ۿ\s]", "", value)
    return _INVISIBLE_RE.sub("", value).strip()


AREA = normalize_label("متراژ")
BUILT = normalize_label("ساخت")
ROOMS = normalize_label("اتاق")
PHOTOS_VERIFIED = normalize_label("تصویر‌ها برای همین ملک است؟")
PRICE_TOTAL = normalize_label("قیمت کل")
PRICE_PER_SQUARE = normalize_label("قیمت هر متر")
FLOOR = normalize_label("طبقه")
DEPOSIT = normalize_label("ودیعه")
RENT = normalize_label("اجارهٔ ماهانه")
CONVERSION = normalize_label("ودیعه و اجاره")

PRIMARY_GROUP_LABELS = frozenset({AREA, BUILT, ROOMS})
PRIMARY_UNEXPANDABLE_LABELS = frozenset(
    normalize_label(label)
    for label in (
        "تصویر‌ها برای همین ملک است؟",
        "قیمت کل",
        "قیمت هر متر",
        "طبقه",
        "ودیعه",
        "اجارهٔ ماهانه",
        "ودیعه و اجاره",
        "متراژ زمین",
        "ظرفیت",
        "آخر هفته",
        "روزهای عادی",
        "تعطیلات و مناسبت‌ها",
        "هزینهٔ هر نفرِ اضافه",
        "تعداد طبقات",
        "تعداد واحد در هر طبقه",
    )
)

FEATURE_FLAGS = {
    normalize_label("آسانسور"): "has_elevator",
    normalize_label("پارکینگ"): "has_parking",
    normalize_label("انباری"): "has_warehouse",
    normalize_label("بالکن"): "has_balcony",
}

ATTRIBUTE_KEYS = {
    normalize_label(label): key
    for label, key in (
        ("سند", "deed_type"),
        ("جهت ساختمان", "building_direction"),
        ("وضعیت واحد", "unit_condition"),
        ("سیستم گرمایشی", "heating_system"),
        ("سیستم سرمایشی", "cooling_system"),
        ("سرویس بهداشتی", "toilet_type"),
        ("مبدا تامین آب گرم", "warm_water_provider"),
        ("جنس کف", "floor_material"),
        ("نوع واحد‌ها", "unit_types"),
        ("نوع ملک", "property_type"),
        ("کمترین متراژ", "min_area"),
        ("تحویل", "handover"),
        ("سازنده", "builder"),
        ("وضعیت فعلی پروژه", "project_status"),
        ("پیشرفت فیزیکی کل پروژه", "project_progress"),
        ("پیش پرداخت اولیه", "down_payment"),
        ("پرداختی در زمان تحویل", "handover_payment"),
        ("قیمت پایه برای هر متر مربع", "base_price_per_sqm"),
    )
}

TRUE_VALUES = frozenset({"بله", "بلی", "true", "yes", "1"})
FALSE_VALUES = frozenset({"خیر", "false", "no", "0"})

NUMBER_WORDS = {
    "صفر": 0,
    "یک": 1,
    "دو": 2,
    "سه": 3,
    "چهار": 4,
    "پنج": 5,
    "شش": 6,
    "هفت": 7,
    "هشت": 8,
    "نه": 9,
    "ده": 10,
    "یازده": 11,
    "دوازده": 12,
    "بیست": 20,
    "سی": 30,
    "چهل": 40,
    "پنجاه": 50,
    "شصت": 60,
    "صد": 100,
    "چند": 3,
    "نیم": 0.5,
    "ربع": 0.25,
}

RELATIVE_UNIT_SECONDS = {
    "ثانیه": 1,
    "دقیقه": 60,
    "ساعت": 3600,
    "روز": 86400,
    "هفته": 7 * 86400,
    "ماه": 30 * 86400,
    "سال": 365 * 86400,
    "ربع": 15 * 60,
    "ربعساعت": 15 * 60,
}

_RELATIVE_RE = re.compile(
    r"(?:(\d+(?:\.\d+)?)|([^\s]+))\s+(ثانیه|ثانيه|دقیقه|دقيقه|ساعت|روز|هفته|ماه|سال|ربع(?:\s*ساعت)?)"
)
_MOMENT_TOKENS = ("لحظه", "لحظات", "دقایقی", "دقايقي")
ROOM_WORDS = {"بدون اتاق": 0, "یک": 1, "دو": 2, "سه": 3, "چهار": 4, "پنج": 5, "شش": 6}


class ListingParseError(ValueError):
    """Raised when a payload is not a JSON object."""


def parse_listing(payload: Any) -> ParsedListing:
    if not isinstance(payload, dict):
        raise ListingParseError("listing payload must be a JSON object")
    return _ParserState(payload).parse()


def parse_relative_seconds(subtitle: str) -> float | None:
    """Seconds encoded in a "<n> <unit> ago in <district>" subtitle."""
    relative = subtitle
    for marker in (" در ", " در", "در "):
        index = subtitle.find(marker)
        if index != -1:
            relative = subtitle[:index]
            break
    cleaned = _INVISIBLE_RE.sub(" ", normalize_digits(relative))
    match = _RELATIVE_RE.search(cleaned)
    if match is None:
        if any(token in cleaned for token in _MOMENT_TOKENS):
            return 5 * 60.0
        return None

    raw = match.group(1) or match.group(2) or ""
    value = parse_number(raw)
    if value is None:
        value = NUMBER_WORDS.get(normalize_word(raw))
    if value is None:
        return None
    unit = normalize_word(match.group(3)).replace(" ", "")
    seconds = RELATIVE_UNIT_SECONDS.get(unit)
    return value * seconds if seconds is not None else None


def attribute_key(label: str) -> str:
    normalized = normalize_label(label)
    mapped = ATTRIBUTE_KEYS.get(normalized)
    if mapped:
        return mapped
    return "attr_" + hashlib.sha1(normalized.encode("utf-8")).hexdigest()[:10]


def _as_dict(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _as_int(value: float | None) -> int | None:
    return int(value) if value is not None else None


def _parse_rooms(value: str) -> int | None:
    normalized = value.strip()
    if normalized in ROOM_WORDS:
        return ROOM_WORDS[normalized]
    if "بدون" in normalized:
        return 0
    return _as_int(parse_number(normalized))


def _parse_floor(value: str) -> int | None:
    trimmed = value.strip()
    if trimmed == "همکف":
        return 0
    if trimmed == "زیرهمکف":
        return -1
    return _as_int(parse_number(trimmed))


def _parse_bool(value: str | None) -> bool | None:
    if not value:
        return None
    normalized = value.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    return None


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class _ParserState:
    def __init__(self, root: dict[str, Any]) -> None:
        self.root = root
        self.fields: dict[str, Any] = {}
        self.group_values: dict[str, str] = {}
        self.unexpandable_values: dict[str, str] = {}
        self.attributes: list[ParsedAttribute] = []
        self.medias: list[ParsedMedia] = []
        self.feature_flags: dict[str, bool] = {}
        self.webengage: dict[str, float | None] = {}
        self.schema_area: float | None = None

    def parse(self) -> ParsedListing:
        self._seo()
        self._share()
        self._contact()
        self._analytics()
        self._city()
        self._webengage()
        for section in _as_list(self.root.get("sections")):
            section_obj = _as_dict(section)
            if section_obj:
                self._widgets(_as_list(section_obj.get("widgets")))
        return self._result()

    def _set_default(self, name: str, value: Any) -> None:
        if value is not None and self.fields.get(name) is None:
            self.fields[name] = value

    def _seo(self) -> None:
        seo = _as_dict(self.root.get("seo"))
        if not seo:
            return
        self.fields["seo_title"] = as_text(seo.get("title"))
        self.fields["seo_description"] = as_text(seo.get("description"))
        self.fields["expires_at"] = _parse_datetime(as_text(seo.get("unavailable_after")))

        web_info = _as_dict(seo.get("web_info"))
        if web_info:
            self._set_default("title", as_text(web_info.get("title")))
            self._set_default("city_name", as_text(web_info.get("city_persian")))
            self._set_default("district_name", as_text(web_info.get("district_persian")))

        schema = _as_dict(seo.get("post_seo_schema"))
        if schema:
            self._set_default("permalink", as_text(schema.get("url")))
            geo = _as_dict(schema.get("geo"))
            if geo:
                latitude = parse_number(geo.get("latitude"))
                longitude = parse_number(geo.get("longitude"))
                if latitude is not None and longitude is not None:
                    self.fields["latitude"] = latitude
                    self.fields["longitude"] = longitude
            floor_size = _as_dict(schema.get("floorSize"))
            if floor_size:
                self.schema_area = parse_number(floor_size.get("value"))

    def _share(self) -> None:
        share = _as_dict(self.root.get("share"))
        if share:
            self._set_default("share_url", as_text(share.get("web_url")))

    def _contact(self) -> None:
        contact = _as_dict(self.root.get("contact"))
        if contact:
            self._set_default("contact_uuid", as_text(contact.get("contact_uuid")))

    def _analytics(self) -> None:
        analytics = _as_dict(self.root.get("analytics"))
        if not analytics:
            return
        for name in ("cat1", "cat2", "cat3"):
            self._set_default(name, as_text(analytics.get(name)))
        self._set_default("city_slug", as_text(analytics.get("city")))

    def _city(self) -> None:
        city = _as_dict(self.root.get("city"))
        if not city:
            return
        city_id = _as_int(parse_number(city.get("city_id")))
        if city_id is not None:
            self.fields["city_id"] = city_id
        province_id = _as_int(parse_number(city.get("parent_id")))
        if province_id is not None:
            self.fields["province_id"] = province_id
        self._set_default("city_slug", as_text(city.get("second_slug")))
        self._set_default("city_name", as_text(city.get("name")))

    def _webengage(self) -> None:
        webengage = _as_dict(self.root.get("webengage"))
        if not webengage:
            return
        for name in ("price", "rent", "credit", "image_count"):
            self.webengage[name] = parse_number(webengage.get(name))
        self._set_default("business_type", as_text(webengage.get("business_type")))
        self._set_default("city_slug", as_text(webengage.get("city")))
        self._set_default("district_slug", as_text(webengage.get("district")))
        self._set_default("cat1", as_text(webengage.get("cat_1")))
        self._set_default("cat2", as_text(webengage.get("cat_2")))
        self._set_default("cat3", as_text(webengage.get("cat_3")) or as_text(webengage.get("category")))

    def _widgets(self, widgets: list[Any]) -> None:
        handlers = {
            "GroupInfoRow": self._group_info_row,
            "UnexpandableRowData": self._unexpandable_row,
            "GroupFeatureRow": self._group_feature_row,
            "LegendTitleRowData": self._legend_title_row,
            "DescriptionRowData": self._description_row,
            "ImageCarouselData": self._image_carousel,
            "MapRowData": self._map_row,
            "FeatureRowData": self._feature_row,
        }
        for widget in widgets:
            widget_obj = _as_dict(widget)
            data = _as_dict(widget_obj.get("data")) if widget_obj else None
            if not widget_obj or not data:
                continue
            kind = (as_text(data.get("@type")) or "").removeprefix(WIDGET_PREFIX)
            handler = handlers.get(kind)
            if handler is not None:
                handler(data)
            self._modal_sources(widget_obj)
            self._modal_sources(data)

    def _group_info_row(self, data: dict[str, Any]) -> None:
        for raw in _as_list(data.get("items")):
            item = _as_dict(raw) or {}
            title = as_text(item.get("title"))
            value = as_text(item.get("value"))
            if not title or not value:
                continue
            key = normalize_label(title)
            self.group_values.setdefault(key, value)
            if key not in PRIMARY_GROUP_LABELS:
                self._add_value_attribute(title, value)

    def _unexpandable_row(self, data: dict[str, Any]) -> None:
        title = as_text(data.get("title"))
        value = as_text(data.get("value"))
        if not title or not value:
            return
        key = normalize_label(title)
        self.unexpandable_values.setdefault(key, value)
        if key == PHOTOS_VERIFIED:
            self.fields["photos_verified"] = _parse_bool(value)
        elif key == CONVERSION:
            self.fields["conversion_type"] = value
        if key not in PRIMARY_UNEXPANDABLE_LABELS:
            self._add_value_attribute(title, value)

    def _group_feature_row(self, data: dict[str, Any]) -> None:
        for raw in _as_list(data.get("items")):
            item = _as_dict(raw) or {}
            title = as_text(item.get("title"))
            if not title:
                continue
            negative = title.endswith("ندارد")
            available = item.get("available")
            value = False if negative else (available if isinstance(available, bool) else True)
            flag = FEATURE_FLAGS.get(normalize_label(re.sub(r"\s*ندارد$", "", title)))
            if flag:
                self.feature_flags[flag] = value
            else:
                self.attributes.append(
                    ParsedAttribute(
                        key=attribute_key(title), label=title, type="feature", string_value=title, bool_value=value
                    )
                )

    def _legend_title_row(self, data: dict[str, Any]) -> None:
        title = as_text(data.get("title"))
        if title:
            self.fields["display_title"] = title
        subtitle = as_text(data.get("subtitle"))
        if subtitle:
            self.fields["display_subtitle"] = subtitle
            seconds = parse_relative_seconds(subtitle)
            if seconds is not None:
                self.fields["relative_publish_seconds"] = seconds

    def _description_row(self, data: dict[str, Any]) -> None:
        text = as_text(data.get("text"))
        if not text:
            return
        if data.get("is_primary") is not False or not self.fields.get("description"):
            self.fields["description"] = text

    def _image_carousel(self, data: dict[str, Any]) -> None:
        for raw in _as_list(data.get("items")):
            item = _as_dict(raw)
            if not item:
                continue
            image = _as_dict(item.get("image")) or item
            url = as_text(image.get("url"))
            if not url:
                continue
            self.medias.append(
                ParsedMedia(
                    url=url,
                    thumbnail_url=as_text(image.get("thumbnail_url")),
                    alt=as_text(image.get("alt")),
                    position=len(self.medias),
                )
            )

    def _map_row(self, data: dict[str, Any]) -> None:
        location = _as_dict(data.get("location")) or {}
        point = None
        for source in ("exact_data", "approx_data"):
            point = _as_dict((_as_dict(location.get(source)) or {}).get("point"))
            if point:
                break
        if not point:
            return
        latitude = parse_number(point.get("latitude"))
        longitude = parse_number(point.get("longitude"))
        if latitude is not None and longitude is not None:
            self.fields["latitude"] = latitude
            self.fields["longitude"] = longitude

    def _feature_row(self, data: dict[str, Any]) -> None:
        title = as_text(data.get("title"))
        if title:
            self.attributes.append(
                ParsedAttribute(key=attribute_key(title), label=title, type="feature", string_value=title)
            )

    def _modal_sources(self, source: dict[str, Any]) -> None:
        action = _as_dict(source.get("action"))
        if action:
            payload = _as_dict(action.get("payload")) or {}
            page = _as_dict(payload.get("modal_page") or action.get("modal_page"))
            if page:
                self._widgets(_as_list(page.get("widget_list")))
        page = _as_dict(source.get("modal_page"))
        if page:
            self._widgets(_as_list(page.get("widget_list")))

    def _add_value_attribute(self, title: str, value: str) -> None:
        number = parse_number(value)
        self.attributes.append(
            ParsedAttribute(
                key=attribute_key(title),
                label=title,
                type="string" if number is None else "number",
                string_value=value,
                number_value=number,
            )
        )

    def _unexpandable_number(self, label: str) -> float | None:
        return parse_number(self.unexpandable_values.get(label))

    def _result(self) -> ParsedListing:
        area_label = self.group_values.get(AREA)
        rooms_label = self.group_values.get(ROOMS)
        floor_label = self.unexpandable_values.get(FLOOR)
        price_total = self._unexpandable_number(PRICE_TOTAL)
        deposit = self._unexpandable_number(DEPOSIT)
        rent = self._unexpandable_number(RENT)
        image_count = self.webengage.get("image_count")

        fields = dict(self.fields)
        fields["title"] = fields.get("title") or fields.get("display_title") or fields.get("seo_title")
        fields["share_url"] = fields.get("share_url") or fields.get("permalink")
        fields["permalink"] = fields.get("permalink") or fields.get("share_url")
        return ParsedListing(
            **fields,
            price_total=price_total if price_total is not None else self.webengage.get("price"),
            price_per_square=self._unexpandable_number(PRICE_PER_SQUARE),
            deposit_amount=deposit if deposit is not None else self.webengage.get("credit"),
            rent_amount=rent if rent is not None else self.webengage.get("rent"),
            area=_as_int(parse_number(area_label) if area_label else self.schema_area),
            rooms=_parse_rooms(rooms_label) if rooms_label else None,
            floor=_parse_floor(floor_label) if floor_label else None,
            year_built=_as_int(parse_number(self.group_values.get(BUILT))),
            image_count=_as_int(image_count) if image_count is not None else (len(self.medias) or None),
            medias=list(self.medias),
            attributes=list(self.attributes),
            **self.feature_flags,
        )
