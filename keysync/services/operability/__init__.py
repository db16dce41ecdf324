from keysync.services.operability.alerts import (
    AlertConfig,
    alert_config_from_settings,
    handle_job_result,
    render_template,
)
from keysync.services.operability.state import get_job_state

__all__ = [
    "AlertConfig",
    "alert_config_from_settings",
    "get_job_state",
    "handle_job_result",
    "render_template",
]
