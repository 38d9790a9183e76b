"""
Сидинг тестовых данных в БД.
Консультант, клиент и встреча в статусе counselor_assigned.
Используется для ручных проверок и dev-отладки.
"""

from counseling_engine.common.ids import new_client_id, new_counselor_id, new_meeting_id
from counseling_engine.domain.enums import MeetingStatus, MeetingType
from counseling_engine.storage.db import db_session, init_schema
from counseling_engine.storage.models import Client, Counselor, Meeting

init_schema()

with db_session() as s:
    counselor = Counselor(
        id=new_counselor_id(),
        email="counselor@counseling.local",
        full_name="Dev Counselor",
        work_start="09:00",
        work_end="17:00",
    )
    client = Client(
        id=new_client_id(),
        email="client@counseling.local",
        username="dev-client",
    )
    s.add_all([counselor, client])
    s.flush()

    m = Meeting(
        id=new_meeting_id(),
        client_id=client.id,
        counselor_id=counselor.id,
        meeting_type=MeetingType.virtual,
        issue_description="seed",
        status=MeetingStatus.counselor_assigned,
    )
    s.add(m)
    print("Seeded counselor:", counselor.id)
    print("Seeded client:", client.id)
    print("Seeded meeting:", m.id)
