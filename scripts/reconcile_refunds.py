from ugc_pipeline.config import configure_logging
from ugc_pipeline.db import init_db
from ugc_pipeline.generation import KieClient
from ugc_pipeline.jobs import JobStore
from ugc_pipeline.ledger import CreditLedger
from ugc_pipeline.orchestrator import PipelineOrchestrator
from ugc_pipeline.storage import S3AssetStore


def main() -> None:
    configure_logging()
    init_db()
    orchestrator = PipelineOrchestrator(
        store=JobStore(),
        ledger=CreditLedger(),
        generation=KieClient(),
        assets=S3AssetStore(),
    )
    refunded = orchestrator.reconcile_refunds()
    print(f"Missing refunds reconciled: {refunded}")


if __name__ == "__main__":
    main()
