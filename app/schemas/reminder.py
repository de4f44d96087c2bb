from pydantic import BaseModel


class ReminderRunSummary(BaseModel):
    processed: int
    sent: int
    skipped: int
    failed: int
