"""Audit log repository."""

from safefamily_api.audit.log import SYSTEM_ACTOR, AuditAction


def test_record_returns_stored_entry(audit_log):
    record = audit_log.record(
        AuditAction.GRANT_ACCESS,
        target_email="parent@example.com",
        details={"to_grant": ["safetunes"], "success": True},
    )

    assert record.id > 0
    assert record.actor == SYSTEM_ACTOR
    assert record.action == "grant_access"
    assert record.details == {"to_grant": ["safetunes"], "success": True}
    assert record.created_at is not None


def test_query_newest_first_with_total(audit_log):
    for i in range(5):
        audit_log.record(AuditAction.GRANT_ACCESS, target_email=f"user{i}@example.com")

    entries, total = audit_log.query(limit=2)

    assert total == 5
    assert [e.target_email for e in entries] == ["user4@example.com", "user3@example.com"]

    page2, _ = audit_log.query(limit=2, offset=2)
    assert [e.target_email for e in page2] == ["user2@example.com", "user1@example.com"]


def test_filter_by_action(audit_log):
    audit_log.record(AuditAction.GRANT_ACCESS, target_email="a@example.com")
    audit_log.record(AuditAction.SEND_ALERT, target_email="a@example.com")

    entries, total = audit_log.query(action="send_alert")

    assert total == 1
    assert entries[0].action == "send_alert"


def test_target_filter_is_case_insensitive_substring(audit_log):
    audit_log.record(AuditAction.GRANT_ACCESS, target_email="Parent@Example.com")
    audit_log.record(AuditAction.GRANT_ACCESS, target_email="someone@else.org")

    entries, total = audit_log.query(target_email="PARENT@")

    assert total == 1
    assert entries[0].target_email == "Parent@Example.com"


def test_target_filter_treats_wildcards_literally(audit_log):
    audit_log.record(AuditAction.GRANT_ACCESS, target_email="abc@example.com")

    _, total = audit_log.query(target_email="a%c")

    assert total == 0


def test_operator_actor_is_kept(audit_log):
    record = audit_log.record(AuditAction.RETRY_PROVISION, target_email="a@example.com", actor="ops@example.com")
    entries, _ = audit_log.query(action="retry_provision")
    assert entries[0].actor == "ops@example.com"
    assert entries[0].id == record.id


def test_to_dict_serialises_timestamp(audit_log):
    record = audit_log.record(AuditAction.CHECK_STATUS, target_email=None)
    data = record.to_dict()
    assert isinstance(data["created_at"], str)
    assert data["target_email"] is None
