from .user import User
from .operation_log import OperationLog, OperationLogCreate, OperationLogRead
from .lead_status import LeadStatus, LeadStatusCreate, LeadStatusUpdate, LeadStatusRead
from .contact import (
    Contact, ContactCreate, ContactUpdate, ContactRead, ContactImportEntry, ContactImportRequest,
    Tag, TagCreate, TagRead, ContactTag,
    Note, NoteCreate, NoteUpdate, NoteRead,
)
from .group import WhatsAppGroup, WhatsAppGroupRead, GroupCategoryUpdate, GroupParticipant, GroupParticipantRead
from .message import Message, MessageRead, SendMessageRequest
from .activity import (
    ActivityType, ActivityTypeCreate, ActivityTypeUpdate, ActivityTypeRead,
    Activity, ActivityCreate, ActivityUpdate,
)
from .external_link import ExternalAppLink, ExternalAppLinkCreate, ExternalAppLinkRead
from .session_backup import SessionBackup
