"""Shared fixtures: a throwaway SQLite store and helpers to populate it."""

from datetime import date
from typing import Optional

import pytest

from filing_reminders.models import (
    Client,
    ClientFilingAssignment,
    EmailTemplate,
    FilingTypeId,
    Schedule,
    ScheduleStep,
    ScheduleType,
)
from filing_reminders.store import ReminderStore


def text_body(*paragraphs: str) -> dict:
    """A structured template body with one paragraph per string."""
    return {
        "type": "doc",
        "content": [
            {"type": "paragraph", "content": [{"type": "text", "text": p}]}
            for p in paragraphs
        ],
    }


class PracticeSeeder:
    """Small factory for clients, templates and schedules in a test store."""

    def __init__(self, store: ReminderStore):
        self.store = store

    def client(
        self,
        client_id: str = "acme",
        company_name: str = "Acme Ltd",
        filing_types: tuple = (),
        **kwargs,
    ) -> Client:
        client = Client(id=client_id, company_name=company_name, **kwargs)
        self.store.upsert_client(client)
        for ft in filing_types:
            self.store.set_assignment(ClientFilingAssignment(client_id, FilingTypeId.parse(ft)))
        return client

    def template(self, template_id: str, subject: str = "Reminder: {{filing_type}}",
                 body: Optional[dict] = None) -> EmailTemplate:
        template = EmailTemplate(
            id=template_id,
            name=template_id,
            subject=subject,
            body=body or text_body("Dear {{client_name}}, your deadline is {{deadline}}."),
        )
        self.store.upsert_template(template)
        return template

    def filing_schedule(
        self,
        filing_type: FilingTypeId,
        delays: tuple = (30, 14, 7),
        schedule_id: Optional[str] = None,
    ) -> Schedule:
        schedule_id = schedule_id or f"sched-{filing_type.value}"
        steps = []
        for number, delay in enumerate(delays, start=1):
            template_id = f"{schedule_id}-t{number}"
            self.template(template_id)
            steps.append(ScheduleStep(number, template_id, delay))
        schedule = Schedule(
            id=schedule_id,
            name=filing_type.display_name,
            schedule_type=ScheduleType.FILING,
            filing_type_id=filing_type,
            steps=steps,
        )
        self.store.upsert_schedule(schedule)
        return schedule

    def custom_schedule(
        self,
        schedule_id: str = "newsletter",
        name: str = "Quarterly Newsletter",
        delays: tuple = (7,),
        custom_date: Optional[date] = None,
        **kwargs,
    ) -> Schedule:
        steps = []
        for number, delay in enumerate(delays, start=1):
            template_id = f"{schedule_id}-t{number}"
            self.template(template_id, subject="{{filing_type}} for {{client_name}}")
            steps.append(ScheduleStep(number, template_id, delay))
        schedule = Schedule(
            id=schedule_id,
            name=name,
            schedule_type=ScheduleType.CUSTOM,
            custom_date=custom_date,
            steps=steps,
            **kwargs,
        )
        self.store.upsert_schedule(schedule)
        return schedule


@pytest.fixture
def store(tmp_path) -> ReminderStore:
    return ReminderStore(tmp_path / "reminders.db")


@pytest.fixture
def seed(store) -> PracticeSeeder:
    return PracticeSeeder(store)
