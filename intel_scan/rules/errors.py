from dataclasses import dataclass


@dataclass(frozen=True)
class ConfigErrorCode:
    code: str
    message: str


CONFIG_001_NOT_FOUND = ConfigErrorCode(
    "CONFIG_001_NOT_FOUND",
    "Scan configuration file was not found.",
)
CONFIG_002_PARSE_FAILED = ConfigErrorCode(
    "CONFIG_002_PARSE_FAILED",
    "Scan configuration file parse failed.",
)
CONFIG_003_SCHEMA_INVALID = ConfigErrorCode(
    "CONFIG_003_SCHEMA_INVALID",
    "Scan configuration schema validation failed.",
)
CONFIG_004_UNKNOWN_SECTION = ConfigErrorCode(
    "CONFIG_004_UNKNOWN_SECTION",
    "Scan configuration references an unknown report section.",
)
CONFIG_005_SCHEMA_NOT_FOUND = ConfigErrorCode(
    "CONFIG_005_SCHEMA_NOT_FOUND",
    "Schema file was not found.",
)


class ConfigError(RuntimeError):
    def __init__(self, err: ConfigErrorCode, detail: str = "") -> None:
        suffix = f" detail={detail}" if detail else ""
        super().__init__(f"{err.code}: {err.message}{suffix}")
        self.err = err
        self.detail = detail
