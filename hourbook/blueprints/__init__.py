"""HTTP surface of the allocation engine, one blueprint per concern."""

from hourbook.blueprints.capacity_bp import capacity_bp
from hourbook.blueprints.health_bp import health_bp
from hourbook.blueprints.hour_change_bp import hour_change_bp
from hourbook.blueprints.phase_allocation_bp import phase_allocation_bp
from hourbook.blueprints.weekly_allocation_bp import weekly_allocation_bp

ALL_BLUEPRINTS = (
    weekly_allocation_bp,
    phase_allocation_bp,
    hour_change_bp,
    capacity_bp,
    health_bp,
)
