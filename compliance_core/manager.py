"""
Compliance Manager.

============================================================
PURPOSE
============================================================
Wires the compliance services together once per process.

Construction order:
  config -> store -> audit -> anonymization engine
  -> retention -> consent -> workflows -> data subjects

Services receive their collaborators by injection; nothing in
the package holds module-level service instances.

============================================================
"""

import logging
import random
from dataclasses import dataclass
from typing import Optional

from .anonymizer import AnonymizationEngine, create_anonymization_engine
from .audit import AuditService
from .clock import ClockProtocol, SystemClock
from .config import ComplianceConfig
from .consent import ConsentService
from .data_subject import DataSubjectService
from .exceptions import ValidationError
from .models import ComplianceFlag, RiskLevel
from .notifications import EmailSender, create_email_sender
from .retention import RetentionService, RetentionTableRegistry
from .sql_store import create_sql_store
from .store import InMemoryRecordStore, RecordStore
from .workflows import ConsentWorkflowService


logger = logging.getLogger(__name__)


@dataclass
class ComplianceManager:
    """The wired compliance services."""
    config: ComplianceConfig
    store: RecordStore
    audit: AuditService
    engine: AnonymizationEngine
    retention: RetentionService
    consent: ConsentService
    workflows: ConsentWorkflowService
    data_subjects: DataSubjectService
    email_sender: EmailSender

    async def rotate_salt(
        self,
        new_salt: Optional[str] = None,
        epoch: Optional[str] = None,
        rotated_by: Optional[str] = None,
    ) -> str:
        """Rotate the pseudonymization salt and audit the rotation."""
        previous = self.engine.salt_epoch
        current = self.engine.rotate_salt(new_salt, epoch)

        await self.audit.log(
            "rotate_pseudonymization_salt",
            "anonymization_engine",
            "pseudonymization_salt",
            user_id=rotated_by,
            old_data={"salt_epoch": previous},
            new_data={"salt_epoch": current},
            risk_level=RiskLevel.HIGH,
            compliance_flags=[ComplianceFlag.DATA_PROTECTION.value],
        )
        return current

    async def close(self) -> None:
        """Finish background reports and release connections."""
        await self.audit.wait_for_reports()
        await self.email_sender.close()
        await self.store.close()
        logger.info("Compliance manager closed")


def create_compliance_manager(
    config: Optional[ComplianceConfig] = None,
    store: Optional[RecordStore] = None,
    email_sender: Optional[EmailSender] = None,
    clock: Optional[ClockProtocol] = None,
    registry: Optional[RetentionTableRegistry] = None,
    rng: Optional[random.Random] = None,
) -> ComplianceManager:
    """
    Build every compliance service.

    Args:
        config: Configuration (environment by default)
        store: Record store (SQL when DATABASE_URL is set, in-memory otherwise)
        email_sender: Email collaborator (SendGrid when configured, dry run otherwise)
        clock: Time source shared by all services
        registry: Retention table registry
        rng: Random source for differential privacy noise

    Raises:
        ValidationError: the configuration is invalid
    """
    config = config or ComplianceConfig.from_env()
    errors = config.validate()
    if errors:
        raise ValidationError(f"Invalid compliance configuration: {'; '.join(errors)}", errors=errors)

    clock = clock or SystemClock()

    if store is None:
        store = create_sql_store(config.database_url) if config.database_url else InMemoryRecordStore()
    email_sender = email_sender or create_email_sender(config)

    audit = AuditService(store, config, clock)
    engine = create_anonymization_engine(config, clock=clock, rng=rng)
    retention = RetentionService(store, audit, engine, registry, config, clock)
    consent = ConsentService(store, audit, clock)
    workflows = ConsentWorkflowService(store, consent, email_sender, config, clock)
    data_subjects = DataSubjectService(store, audit, engine, config, clock, email_sender)

    logger.info(
        f"Compliance manager ready (store={store.name}, email={email_sender.name}, "
        f"salt_epoch={engine.salt_epoch})"
    )

    return ComplianceManager(
        config=config,
        store=store,
        audit=audit,
        engine=engine,
        retention=retention,
        consent=consent,
        workflows=workflows,
        data_subjects=data_subjects,
        email_sender=email_sender,
    )
