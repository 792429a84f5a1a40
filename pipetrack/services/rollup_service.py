"""
Read-only progress rollups over the cached ``percent_complete``.

Averages are unweighted per component.  No locks are taken; a rollup that
races a milestone write may be one write behind.
"""

from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func

from pipetrack.models import db
from pipetrack.models.component import Component
from pipetrack.models.project import Drawing, TestPackage

TWO_PLACES = Decimal("0.01")


def _avg(value) -> float:
    if value is None:
        return 0.0
    return float(Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP))


def drawing_progress(project_id: int) -> list[dict]:
    rows = (
        db.session.query(
            Drawing.id,
            Drawing.drawing_no_norm,
            Drawing.drawing_no_raw,
            func.count(Component.id),
            func.avg(Component.percent_complete),
        )
        .outerjoin(
            Component,
            (Component.drawing_id == Drawing.id) & Component.retired_at.is_(None),
        )
        .filter(Drawing.project_id == project_id, Drawing.retired_at.is_(None))
        .group_by(Drawing.id, Drawing.drawing_no_norm, Drawing.drawing_no_raw)
        .order_by(Drawing.drawing_no_norm)
        .all()
    )
    return [
        {
            "drawing_id": drawing_id,
            "drawing_no": raw,
            "drawing_no_norm": norm,
            "component_count": count,
            "percent_complete": _avg(avg) if count else 0.0,
        }
        for drawing_id, norm, raw, count, avg in rows
    ]


def package_progress(project_id: int) -> list[dict]:
    """Per test package; components without a package are reported under ``None``."""
    rows = (
        db.session.query(
            Component.test_package_id,
            func.count(Component.id),
            func.avg(Component.percent_complete),
        )
        .filter(Component.project_id == project_id, Component.retired_at.is_(None))
        .group_by(Component.test_package_id)
        .all()
    )
    names = {
        p.id: p.name
        for p in TestPackage.query.filter_by(project_id=project_id).all()
    }
    result = [
        {
            "test_package_id": package_id,
            "name": names.get(package_id) if package_id else None,
            "component_count": count,
            "percent_complete": _avg(avg),
        }
        for package_id, count, avg in rows
    ]
    return sorted(result, key=lambda r: (r["name"] is None, r["name"] or ""))
