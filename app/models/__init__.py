from app.models.branch import Branch
from app.models.user import User
from app.models.customer import Customer, PurchaseRecord, VisitRecord
from app.models.automation import (
    AutomationDispatch,
    AutomationFlow,
    PointActionLog,
    SmsSendLog,
)
