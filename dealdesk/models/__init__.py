from dealdesk.deals.models import Company, Contact, Deal, NotificationIntent
from dealdesk.documents.models import Document, Signature, WorkflowStep
from dealdesk.tasks.models import Task

__all__ = [
	"Company",
	"Contact",
	"Deal",
	"Document",
	"NotificationIntent",
	"Signature",
	"Task",
	"WorkflowStep",
]
