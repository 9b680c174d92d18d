from intel_scan.db.base import Base
from intel_scan.db.engine import engine_from_env, make_engine
from intel_scan.db.models import ScanReport

__all__ = ["Base", "ScanReport", "engine_from_env", "make_engine"]
