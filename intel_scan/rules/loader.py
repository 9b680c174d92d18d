from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import replace
from pathlib import Path
from typing import Any, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from intel_scan.core.models import CATEGORY_KEYS, SEVERITY_LEVELS
from intel_scan.rules.errors import (
    CONFIG_001_NOT_FOUND,
    CONFIG_002_PARSE_FAILED,
    CONFIG_003_SCHEMA_INVALID,
    CONFIG_004_UNKNOWN_SECTION,
    CONFIG_005_SCHEMA_NOT_FOUND,
    ConfigError,
)
from intel_scan.rules.models import (
    CategoryRule,
    ClassificationRules,
    ClusterCap,
    EmailSettings,
    HeadlineRules,
    ScanConfig,
    ScanSettings,
    ScoreSignal,
    SourceSpec,
    Topic,
)
from intel_scan.utils.url_norm import DEFAULT_ALLOWLIST, DomainAllowlist


logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "rules" / "sources.yaml"
DEFAULT_SCHEMA_PATH = PROJECT_ROOT / "rules" / "schemas" / "scan_config.schema.json"

_ENV_REF = re.compile(r"\$\{([^}]+)\}")


def _type_ok(expected: str, value: Any) -> bool:
    mapping = {
        "object": dict,
        "array": list,
        "string": str,
        "number": (int, float),
        "integer": int,
        "boolean": bool,
        "null": type(None),
    }
    py_t = mapping.get(expected)
    if py_t is None:
        return True
    if expected in ("number", "integer") and isinstance(value, bool):
        return False
    return isinstance(value, py_t)


def _validate_schema(
    data: Any,
    schema: dict[str, Any],
    path: str = "$",
    root_schema: dict[str, Any] | None = None,
) -> list[str]:
    errors: list[str] = []
    root_schema = root_schema or schema

    if "$ref" in schema:
        ref = str(schema["$ref"])
        target = root_schema.get("$defs", {}).get(ref.split("/")[-1]) if ref.startswith("#/$defs/") else None
        if not isinstance(target, dict):
            return [f"{path}: unresolved $ref {ref}"]
        return _validate_schema(data, target, path, root_schema)

    expected_type = schema.get("type")
    if expected_type:
        types = expected_type if isinstance(expected_type, list) else [expected_type]
        if not any(_type_ok(str(t), data) for t in types):
            errors.append(f"{path}: expected {expected_type}, got {type(data).__name__}")
            return errors

    if "enum" in schema and data not in schema["enum"]:
        errors.append(f"{path}: expected one of {schema['enum']!r}, got {data!r}")

    if isinstance(data, (int, float)) and not isinstance(data, bool):
        if "minimum" in schema and data < schema["minimum"]:
            errors.append(f"{path}: value {data} < minimum {schema['minimum']}")
        if "maximum" in schema and data > schema["maximum"]:
            errors.append(f"{path}: value {data} > maximum {schema['maximum']}")

    if isinstance(data, str):
        if "minLength" in schema and len(data) < schema["minLength"]:
            errors.append(f"{path}: string length < {schema['minLength']}")
        if "pattern" in schema and not re.search(str(schema["pattern"]), data):
            errors.append(f"{path}: does not match pattern {schema['pattern']!r}")

    if isinstance(data, list):
        if "minItems" in schema and len(data) < schema["minItems"]:
            errors.append(f"{path}: array length < {schema['minItems']}")
        item_schema = schema.get("items")
        if isinstance(item_schema, dict):
            for idx, item in enumerate(data):
                errors.extend(_validate_schema(item, item_schema, f"{path}[{idx}]", root_schema))

    if isinstance(data, dict):
        for k in schema.get("required", []):
            if k not in data:
                errors.append(f"{path}: missing required key '{k}'")
        properties = schema.get("properties", {})
        for k, subschema in properties.items():
            if k in data and isinstance(subschema, dict):
                errors.extend(_validate_schema(data[k], subschema, f"{path}.{k}", root_schema))
        extra = schema.get("additionalProperties")
        if isinstance(extra, dict):
            for k, v in data.items():
                if k not in properties:
                    errors.extend(_validate_schema(v, extra, f"{path}.{k}", root_schema))

    return errors


def resolve_env_refs(value: str, env: Mapping[str, str] | None = None) -> str:
    """Resolve ${VAR} and ${VAR:-default}; unset vars without default are left in place."""
    src = os.environ if env is None else env

    def _sub(m: re.Match[str]) -> str:
        inner = m.group(1)
        name, has_default, default = inner.partition(":-")
        val = str(src.get(name.strip(), "") or "")
        if val:
            return val
        if has_default:
            return default
        logger.warning("environment variable %s is not set, keeping placeholder", name.strip())
        return m.group(0)

    return _ENV_REF.sub(_sub, str(value or ""))


def _strs(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(x).strip() for x in value if str(x or "").strip())


def _check_category(name: str, where: str) -> str:
    n = str(name or "").strip()
    if n not in CATEGORY_KEYS:
        raise ConfigError(CONFIG_004_UNKNOWN_SECTION, f"{where}={n!r}")
    return n


def _check_regex(pattern: str, where: str) -> str:
    try:
        re.compile(pattern)
    except re.error as e:
        raise ConfigError(CONFIG_003_SCHEMA_INVALID, f"{where}: invalid regex {pattern!r} ({e})") from e
    return pattern


def _build_topics(raw: list[dict[str, Any]]) -> tuple[Topic, ...]:
    topics: list[Topic] = []
    for t_idx, t in enumerate(raw):
        category = _check_category(t.get("category", ""), f"topics[{t_idx}].category")
        sources = tuple(
            SourceSpec(
                name=str(s.get("name", "")).strip(),
                url=str(s.get("url", "")).strip(),
                type=str(s.get("type", "rss")).strip().lower(),
                rss_url=str(s.get("rss_url", "") or "").strip(),
                keywords=_strs(s.get("keywords")),
                category=category,
            )
            for s in t.get("sources", [])
        )
        topics.append(
            Topic(
                name=str(t.get("name", "")).strip(),
                category=category,
                priority=int(t.get("priority", 0) or 0),
                sources=sources,
            )
        )
    return tuple(topics)


def _build_rules(doc: dict[str, Any]) -> ClassificationRules:
    cls = doc.get("classification", {}) or {}
    severity = doc.get("severity_rules", {}) or {}
    impacts = doc.get("impact_keywords", {}) or {}

    category_rules = tuple(
        CategoryRule(
            category=_check_category(r.get("category", ""), f"classification.category_rules[{i}].category"),
            keywords=tuple(k.lower() for k in _strs(r.get("keywords"))),
            domains=tuple(d.lower() for d in _strs(r.get("domains"))),
        )
        for i, r in enumerate(cls.get("category_rules", []))
    )
    signals = tuple(
        ScoreSignal(
            name=str(s.get("name", "")).strip(),
            points=int(s.get("points", 0)),
            keywords=tuple(k.lower() for k in _strs(s.get("keywords"))),
            domains=tuple(d.lower() for d in _strs(s.get("domains"))),
            url_patterns=tuple(
                _check_regex(p, f"classification.scoring_signals[{i}].url_patterns") for p in _strs(s.get("url_patterns"))
            ),
            pattern=_check_regex(str(s.get("pattern", "") or ""), f"classification.scoring_signals[{i}].pattern"),
            max_age_hours=int(s["max_age_hours"]) if s.get("max_age_hours") is not None else None,
        )
        for i, s in enumerate(cls.get("scoring_signals", []))
    )
    clusters = tuple(
        ClusterCap(
            name=str(c.get("name", "")).strip(),
            categories=tuple(
                _check_category(x, f"classification.clusters[{i}].categories") for x in _strs(c.get("categories"))
            ),
            max_fraction=float(c.get("max_fraction", 0.4)),
        )
        for i, c in enumerate(cls.get("clusters", []))
    )
    h = cls.get("headline", {}) or {}
    headline = HeadlineRules(
        max_items=int(h.get("max_items", 5)),
        min_score=int(h.get("min_score", 3)),
        max_per_domain_group=int(h.get("max_per_domain_group", 2)),
        dominant_domains={str(k): tuple(d.lower() for d in _strs(v)) for k, v in (h.get("dominant_domains") or {}).items()},
        must_represent=tuple(
            _check_category(x, "classification.headline.must_represent") for x in _strs(h.get("must_represent"))
        ),
    )
    max_total = cls.get("max_total_items")
    return ClassificationRules(
        severity_rules={lvl: tuple(k.lower() for k in _strs(severity.get(lvl))) for lvl in SEVERITY_LEVELS},
        impact_keywords=tuple((str(tag), tuple(k.lower() for k in _strs(kws))) for tag, kws in impacts.items()),
        fallback_impact=str(cls.get("fallback_impact", "Platform")),
        default_category=_check_category(cls.get("default_category", "trend_watchlist"), "classification.default_category"),
        max_items_per_category=int(cls.get("max_items_per_category", 5)),
        max_total_items=int(max_total) if max_total is not None else None,
        category_rules=category_rules,
        scoring_signals=signals,
        clusters=clusters,
        headline=headline,
    )


def build_scan_config(doc: dict[str, Any], *, env: Mapping[str, str] | None = None) -> ScanConfig:
    email_raw = doc.get("email", {}) or {}
    scan_raw = doc.get("scan_config", {}) or {}
    defaults = ScanSettings()
    tz_name = str(scan_raw.get("timezone", defaults.timezone))
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(CONFIG_003_SCHEMA_INVALID, f"scan_config.timezone: unknown timezone {tz_name!r}") from e
    scan = ScanSettings(
        timezone=tz_name,
        scan_time=str(scan_raw.get("scan_time", defaults.scan_time)),
        lookback_hours=int(scan_raw.get("lookback_hours", defaults.lookback_hours)),
        enable_rss=bool(scan_raw.get("enable_rss", defaults.enable_rss)),
        enable_research=bool(scan_raw.get("enable_research", defaults.enable_research)),
        validate_urls=bool(scan_raw.get("validate_urls", defaults.validate_urls)),
        enforce_allowlist=bool(scan_raw.get("enforce_allowlist", defaults.enforce_allowlist)),
        dedupe_by_title=bool(scan_raw.get("dedupe_by_title", defaults.dedupe_by_title)),
        max_entries_per_feed=int(scan_raw.get("max_entries_per_feed", defaults.max_entries_per_feed)),
        fetch_workers=int(scan_raw.get("fetch_workers", defaults.fetch_workers)),
    )
    allow_raw = doc.get("allowlist")
    domains = frozenset(_strs(allow_raw)) if isinstance(allow_raw, list) and allow_raw else DEFAULT_ALLOWLIST
    return ScanConfig(
        email=EmailSettings(
            to_address=resolve_env_refs(email_raw.get("to_address", ""), env),
            from_address=resolve_env_refs(email_raw.get("from_address", ""), env),
            subject_prefix=str(email_raw.get("subject_prefix", EmailSettings().subject_prefix)),
        ),
        scan=scan,
        topics=_build_topics(doc.get("topics", []) or []),
        rules=_build_rules(doc),
        allowlist=DomainAllowlist(domains=domains, enabled=scan.enforce_allowlist),
    )


def load_scan_config(
    path: Path | str | None = None,
    *,
    schema_path: Path | str | None = None,
    env: Mapping[str, str] | None = None,
) -> ScanConfig:
    p = Path(path) if path else Path(os.environ.get("SCAN_CONFIG_PATH", "") or DEFAULT_CONFIG_PATH)
    sp = Path(schema_path) if schema_path else DEFAULT_SCHEMA_PATH
    if not p.exists():
        raise ConfigError(CONFIG_001_NOT_FOUND, str(p))
    if not sp.exists():
        raise ConfigError(CONFIG_005_SCHEMA_NOT_FOUND, str(sp))
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(CONFIG_002_PARSE_FAILED, f"file={p} error={e}") from e
    if not isinstance(doc, dict):
        raise ConfigError(CONFIG_002_PARSE_FAILED, f"file={p} top-level is not a mapping")

    schema = json.loads(sp.read_text(encoding="utf-8"))
    errors = _validate_schema(doc, schema)
    if errors:
        raise ConfigError(CONFIG_003_SCHEMA_INVALID, "; ".join(errors[:10]))

    cfg = build_scan_config(doc, env=env)
    logger.info(
        "configuration loaded path=%s topics=%d sources=%d lookback_hours=%d",
        p,
        len(cfg.topics),
        len(cfg.sources),
        cfg.scan.lookback_hours,
    )
    return cfg


def with_lookback(config: ScanConfig, lookback_hours: int) -> ScanConfig:
    return replace(config, scan=replace(config.scan, lookback_hours=int(lookback_hours)))
