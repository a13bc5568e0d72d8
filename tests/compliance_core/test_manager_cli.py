"""
Tests for configuration, service wiring and the CLI.

============================================================
PURPOSE
============================================================
1. ComplianceConfig loading and validation
2. create_compliance_manager wiring and salt rotation
3. CLI parsing, validation and command output

============================================================
"""

import json
import pytest
from datetime import datetime, timedelta, timezone


NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    from compliance_core.clock import MockClock

    return MockClock(NOW)


@pytest.fixture
def manager(clock):
    from compliance_core.config import ComplianceConfig
    from compliance_core.manager import create_compliance_manager

    return create_compliance_manager(
        ComplianceConfig(master_key="test-key", salt="test-salt", salt_epoch="2026-q2"),
        clock=clock,
    )


def parse(*argv):
    from compliance_core.cli import create_parser

    return create_parser().parse_args(list(argv))


# ============================================================
# CONFIGURATION
# ============================================================

class TestComplianceConfig:
    """Tests for configuration loading and validation."""

    def test_defaults(self):
        from compliance_core.config import ComplianceConfig

        config = ComplianceConfig()

        assert config.audit_retention_years == 7
        assert config.max_retention_days == 2555
        assert config.required_tables == ["patients", "users", "audit_logs"]

    def test_validate_reports_every_problem(self):
        from compliance_core.config import ComplianceConfig

        errors = ComplianceConfig(salt_epoch="x", batch_size=0, log_format="xml").validate()

        assert len(errors) == 4
        assert any("master_key" in e for e in errors)
        assert any("salt_epoch" in e for e in errors)

    def test_valid(self):
        from compliance_core.config import ComplianceConfig

        assert ComplianceConfig(master_key="k").validate() == []

    def test_from_env(self, monkeypatch):
        from compliance_core.config import ComplianceConfig

        monkeypatch.setenv("COMPLIANCE_MASTER_KEY", "env-key")
        monkeypatch.setenv("COMPLIANCE_SALT", "env-salt")
        monkeypatch.setenv("REQUIRED_RETENTION_TABLES", "patients, invoices,")
        monkeypatch.setenv("RETENTION_LOOKAHEAD_DAYS", "14")
        monkeypatch.delenv("DATABASE_URL", raising=False)

        config = ComplianceConfig.from_env()

        assert config.master_key == "env-key"
        assert config.salt == "env-salt"
        assert config.required_tables == ["patients", "invoices"]
        assert config.retention_lookahead_days == 14
        assert config.database_url is None

    def test_data_subject_response_window(self, monkeypatch):
        from compliance_core.config import ComplianceConfig

        monkeypatch.setenv("DATA_SUBJECT_RESPONSE_DAYS", "14")

        assert ComplianceConfig.from_env().data_subject_response_days == 14
        errors = ComplianceConfig(master_key="k", data_subject_response_days=0).validate()
        assert errors == ["data_subject_response_days must be at least 1"]


# ============================================================
# MANAGER
# ============================================================

class TestComplianceManager:
    """Tests for service wiring."""

    def test_invalid_config_rejected(self):
        from compliance_core.config import ComplianceConfig
        from compliance_core.exceptions import ValidationError
        from compliance_core.manager import create_compliance_manager

        with pytest.raises(ValidationError) as exc_info:
            create_compliance_manager(ComplianceConfig())

        assert any("master_key" in e for e in exc_info.value.errors)

    def test_defaults_to_memory_and_dry_run(self, manager):
        assert manager.store.name == "memory"
        assert manager.email_sender.name == "log"
        assert manager.engine.salt_epoch == "2026-q2"

    @pytest.mark.asyncio
    async def test_sql_store_from_url(self, clock):
        from compliance_core.config import ComplianceConfig
        from compliance_core.manager import create_compliance_manager

        manager = create_compliance_manager(
            ComplianceConfig(master_key="k", database_url="sqlite://"),
            clock=clock,
        )
        policy_id = await manager.retention.create_retention_policy({
            "name": "Users",
            "table_name": "users",
            "retention_period_days": 365,
        })

        assert manager.store.name == "sql"
        assert (await manager.retention.get_retention_policy(policy_id)).name == "Users"

        await manager.close()

    @pytest.mark.asyncio
    async def test_rotate_salt_is_audited(self, manager):
        token = manager.engine.pseudonymize("patient-1", "id")

        epoch = await manager.rotate_salt("new-salt", epoch="2026-q3", rotated_by="admin-1")
        logs = await manager.audit.search_logs({"action": "rotate_pseudonymization_salt"})

        assert epoch == "2026-q3"
        assert manager.engine.pseudonymize("patient-1", "id") != token
        event = logs.logs[0]
        assert event.old_data == {"salt_epoch": "2026-q2"}
        assert event.new_data == {"salt_epoch": "2026-q3"}
        assert event.risk_level.value == "high"
        assert event.user_id == "admin-1"

    @pytest.mark.asyncio
    async def test_shared_store(self, manager):
        """Every service writes through the same store."""
        await manager.consent.record_consent({"user_id": "u-1", "consent_type": "cookies", "status": "granted"})

        assert await manager.store.count("consent_records") == 1
        assert await manager.store.count("compliance_audit_logs") == 1

    @pytest.mark.asyncio
    async def test_data_subject_requests_use_shared_sender(self, manager):
        await manager.data_subjects.submit_request({
            "request_type": "access",
            "requester_email": "pat@clinic.example",
        })

        assert len(manager.email_sender.sent) == 1
        assert await manager.store.count("data_subject_requests") == 1


# ============================================================
# CLI
# ============================================================

class TestCliParsing:
    """Tests for argument parsing and validation."""

    def test_command_required(self):
        with pytest.raises(SystemExit):
            parse()

    def test_export_subject_needs_one_subject(self):
        with pytest.raises(SystemExit):
            parse("export-subject")
        with pytest.raises(SystemExit):
            parse("export-subject", "--user-id", "u-1", "--patient-id", "p-1")

        args = parse("export-subject", "--user-id", "u-1")
        assert args.user_id == "u-1"
        assert args.anonymize is False

    def test_audit_report_arguments(self):
        args = parse("audit-report", "--type", "gdpr_compliance", "--title", "Q2", "--date-from", "2026-04-01")

        assert args.command == "audit-report"
        assert args.report_type == "gdpr_compliance"
        assert args.title == "Q2"
        assert args.date_to is None

    def test_validate_args(self):
        from compliance_core.cli import validate_args

        assert validate_args(parse("audit-stats", "--date-from", "2026-01-01")) == []
        assert validate_args(parse("audit-stats", "--date-from", "soon"))
        assert validate_args(parse("audit-stats", "--date-from", "2026-02-01", "--date-to", "2026-01-01")) == [
            "--date-from must not be after --date-to"
        ]

    def test_build_config_overrides(self, monkeypatch):
        from compliance_core.cli import build_config

        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("COMPLIANCE_MASTER_KEY", "env-key")

        config = build_config(parse("--database-url", "sqlite://", "--log-format", "json", "lifecycle-report"))

        assert config.database_url == "sqlite://"
        assert config.log_format == "json"
        assert config.log_level == "WARNING"
        assert config.master_key == "env-key"

    def test_main_rejects_bad_dates(self, capsys):
        from compliance_core.cli import main

        assert main(["audit-stats", "--date-to", "yesterday"]) == 1
        assert "Invalid date" in capsys.readouterr().err


class TestCliCommands:
    """Tests for command execution with a pre-built manager."""

    @pytest.mark.asyncio
    async def test_execute_retention(self, manager, clock, capsys):
        from compliance_core.cli import async_main

        manager.store.seed("patients", [{"id": "p-1", "created_at": clock.now() - timedelta(days=40)}])
        await manager.retention.create_retention_policy({
            "name": "Patients",
            "table_name": "patients",
            "retention_period_days": 30,
            "action": "delete",
        })

        code = await async_main(parse("execute-retention"), manager=manager)
        output = json.loads(capsys.readouterr().out)

        assert code == 0
        assert output[0]["status"] == "completed"
        assert output[0]["records_affected"] == 1

    @pytest.mark.asyncio
    async def test_compliance_check_exit_code(self, manager, capsys):
        from compliance_core.cli import async_main

        code = await async_main(parse("compliance-check"), manager=manager)
        output = json.loads(capsys.readouterr().out)

        assert code == 1
        assert output["gdpr_compliant"] is False
        assert len(output["issues"]) == 3

    @pytest.mark.asyncio
    async def test_lifecycle_report(self, manager, capsys):
        from compliance_core.cli import async_main

        code = await async_main(parse("lifecycle-report"), manager=manager)
        output = json.loads(capsys.readouterr().out)

        assert code == 0
        assert output["total_policies"] == 0
        assert output["generated_at"] == NOW.isoformat()

    @pytest.mark.asyncio
    async def test_audit_stats(self, manager, capsys):
        from compliance_core.cli import async_main

        await manager.audit.log("read", "patient", "p-1")

        code = await async_main(parse("audit-stats"), manager=manager)
        output = json.loads(capsys.readouterr().out)

        assert code == 0
        assert output["total_events"] == 1

    @pytest.mark.asyncio
    async def test_audit_report_includes_payload(self, manager, capsys):
        from compliance_core.cli import async_main

        await manager.audit.log("delete", "patient", "p-1")

        code = await async_main(parse("audit-report", "--title", "June"), manager=manager)
        output = json.loads(capsys.readouterr().out)

        assert code == 0
        assert output["status"] == "completed"
        assert output["payload"]["statistics"]["total_events"] == 1

    @pytest.mark.asyncio
    async def test_cleanup_audit(self, manager, capsys):
        from compliance_core.cli import async_main

        code = await async_main(parse("cleanup-audit"), manager=manager)

        assert code == 0
        assert json.loads(capsys.readouterr().out) == {"deleted": 0}

    @pytest.mark.asyncio
    async def test_run_workflow(self, manager, capsys):
        from compliance_core.cli import async_main

        workflow_id = await manager.workflows.create_workflow({
            "name": "Renewal",
            "trigger": "renewal",
            "status": "active",
        })

        code = await async_main(parse("run-workflow", workflow_id), manager=manager)
        output = json.loads(capsys.readouterr().out)

        assert code == 0
        assert output["status"] == "completed"
        assert output["results"]["processed"] == 0

    @pytest.mark.asyncio
    async def test_missing_workflow_reports_error(self, manager, capsys):
        from compliance_core.cli import async_main

        code = await async_main(parse("run-workflow", "missing"), manager=manager)
        output = json.loads(capsys.readouterr().out)

        assert code == 1
        assert output["error"]["type"] == "WorkflowError"

    @pytest.mark.asyncio
    async def test_run_due_workflows(self, manager, clock, capsys):
        from compliance_core.cli import async_main

        workflow_id = await manager.workflows.create_workflow({
            "name": "Renewal",
            "trigger": "renewal",
            "status": "active",
        })
        await manager.workflows.schedule_workflow(workflow_id, clock.now() - timedelta(minutes=1))

        code = await async_main(parse("run-due-workflows"), manager=manager)
        output = json.loads(capsys.readouterr().out)

        assert code == 0
        assert [e["workflow_id"] for e in output] == [workflow_id]

    @pytest.mark.asyncio
    async def test_export_subject(self, manager, capsys):
        from compliance_core.cli import async_main

        manager.store.seed("patients", [{"id": "p-1", "first_name": "Pat", "created_at": NOW}])

        code = await async_main(parse("export-subject", "--patient-id", "p-1", "--anonymize"), manager=manager)
        output = json.loads(capsys.readouterr().out)

        assert code == 0
        assert output["patient"]["first_name"].startswith("PSEUDO_")
        assert output["metadata"]["anonymized"] is True

    @pytest.mark.asyncio
    async def test_export_missing_subject_reports_error(self, manager, capsys):
        from compliance_core.cli import async_main

        code = await async_main(parse("export-subject", "--user-id", "u-404"), manager=manager)
        output = json.loads(capsys.readouterr().out)

        assert code == 1
        assert output["error"]["type"] == "RecordNotFoundError"

    @pytest.mark.asyncio
    async def test_overdue_requests(self, manager, clock, capsys):
        from compliance_core.cli import async_main

        request_id = await manager.data_subjects.submit_request({
            "request_type": "erasure",
            "requester_email": "pat@clinic.example",
            "patient_id": "p-1",
        })
        clock.advance(days=31)

        code = await async_main(parse("overdue-requests"), manager=manager)
        output = json.loads(capsys.readouterr().out)

        assert code == 1
        assert [r["id"] for r in output] == [request_id]

    @pytest.mark.asyncio
    async def test_invalid_environment(self, monkeypatch, capsys):
        from compliance_core.cli import async_main

        monkeypatch.setenv("COMPLIANCE_MASTER_KEY", "")

        code = await async_main(parse("lifecycle-report"))

        assert code == 1
        assert "master_key" in capsys.readouterr().err


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
