from app.models.account import Account
from app.models.automation import Automation
from app.models.automation_log import AutomationLog, DispatchRecord

__all__ = [
    "Account",
    "Automation",
    "AutomationLog",
    "DispatchRecord",
]
