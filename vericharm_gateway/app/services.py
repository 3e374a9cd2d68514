"""
Wiring of the core components behind the gateway.

Every backend is chosen by configuration (see vericharm.config); the
trust directory is loaded from TRUST_DIRECTORY_PATH when that file
exists and written back after admin changes.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from vericharm import (
    AttestationLedger,
    BoundedExecutor,
    CounterfeitDetector,
    HandoffCoordinator,
    Settings,
    Signer,
    TrustDirectory,
    VerificationEngine,
    create_index,
    create_ledger,
    create_prover,
    create_signer,
    load_settings,
)

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    ledger: AttestationLedger
    trust: TrustDirectory
    signer: Signer
    executor: BoundedExecutor
    engine: VerificationEngine
    handoffs: HandoffCoordinator
    detector: CounterfeitDetector

    def save_trust(self) -> None:
        path = self.settings.trust_directory_path
        if path:
            self.trust.save(path)

    def close(self) -> None:
        self.executor.shutdown()
        self.ledger.close()


def load_trust(settings: Settings) -> TrustDirectory:
    path = settings.trust_directory_path
    if path and os.path.exists(path):
        logger.info("Loading trust directory from %s", path)
        return TrustDirectory.load(path)
    logger.warning("No trust directory at %s, starting empty", path)
    return TrustDirectory()


def build_services(settings: Optional[Settings] = None) -> Services:
    settings = settings or load_settings()
    ledger = create_ledger(settings)
    trust = load_trust(settings)
    signer = create_signer(settings)
    prover = create_prover(settings, signer)
    executor = BoundedExecutor(settings.external_call_timeout_seconds)
    engine = VerificationEngine(
        ledger,
        trust,
        prover=prover,
        signer=signer,
        settings=settings,
        executor=executor,
        index=create_index(ledger, settings),
    )
    return Services(
        settings=settings,
        ledger=ledger,
        trust=trust,
        signer=signer,
        executor=executor,
        engine=engine,
        handoffs=HandoffCoordinator(engine),
        detector=CounterfeitDetector(ledger, trust, executor=executor),
    )
