"""
ML Signal Cycle Job - run pipeline stages once against the configured database.

Stages run in pipeline order:
1. refresh: rebuild feature rows from stored candles (needs a feature engine)
2. train: train, register and promote directional and anomaly models
3. infer: score the latest feature rows and emit signals
4. resolve: resolve due predictions against realized closes

Usage:
    python backend/jobs/ml_signal_cycle.py --stages train,infer
    python backend/jobs/ml_signal_cycle.py --feature-engine mypkg.features:FeatureEngine
"""

import argparse
import importlib
import json
import os
import sys
import threading
from typing import List, Optional, Sequence

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from sqlalchemy.orm import Session

from cryptoadvisor.config import settings
from cryptoadvisor.db.repositories import CandleRepository, FeatureRowRepository, SignalRepository
from cryptoadvisor.db.session import get_db_transaction, init_db
from cryptoadvisor.log_config import cycle_context, get_logger, logger
from cryptoadvisor.ml.inference import InferenceService, build_inference_config
from cryptoadvisor.ml.predictions import PredictionRepository
from cryptoadvisor.ml.registry import ModelRegistryRepository
from cryptoadvisor.ml.training import TrainingService, build_training_config
from cryptoadvisor.services.ml_signal_service import (
    STAGES,
    MLSignalService,
    build_signal_service_config,
)
from cryptoadvisor.utils.errors import ConfigurationError

events = get_logger(__name__)


def load_feature_engine(path: Optional[str]):
    """
    Instantiate a feature engine from a "module:attribute" path.

    The attribute may be a class or a factory; it is called without arguments.
    """
    if not path:
        return None
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Feature engine path must look like 'module:attribute', got '{path}'")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load feature engine '{path}': {e}") from e
    return factory()


def build_service(db: Session, feature_engine=None) -> MLSignalService:
    """Wire repositories and services for one database session."""
    features = FeatureRowRepository(db)
    registry = ModelRegistryRepository(db)
    predictions = PredictionRepository(db)

    training = TrainingService(features, registry, build_training_config(settings))
    inference = InferenceService(
        features=features,
        registry=registry,
        predictions=predictions,
        signals=SignalRepository(db),
        config=build_inference_config(settings),
    )
    return MLSignalService(
        candles=CandleRepository(db),
        feature_engine=feature_engine,
        feature_rows=features,
        training=training,
        inference=inference,
        predictions=predictions,
        config=build_signal_service_config(settings),
    )


def run_ml_cycle(
    stages: Sequence[str] = STAGES,
    feature_engine=None,
    cancel_event: Optional[threading.Event] = None,
) -> dict:
    """
    Run the given stages once.

    Returns:
        Cycle report as a dict
    """
    init_db()

    with cycle_context(stages) as cycle_id, get_db_transaction() as db:
        logger.info(f"Starting ML cycle {cycle_id}: stages={','.join(stages)}")
        service = build_service(db, feature_engine=feature_engine)
        report = service.run_cycle(stages, cancel_event=cancel_event)

    events.info(
        "ml_cycle_finished",
        cycle_id=cycle_id,
        features_refreshed=report.features_refreshed,
        predictions=report.predictions,
        signals=report.signals,
        models_trained=report.models_trained,
        models_promoted=report.models_promoted,
        training_skipped=len(report.training_skipped),
        predictions_resolved=report.predictions_resolved,
        errors=report.errors,
    )
    if report.first_error:
        logger.error(f"ML cycle completed with errors: {report.first_error}")
    return report.to_dict()


def parse_stages(value: str) -> List[str]:
    if not value or value.lower() == "all":
        return list(STAGES)
    stages = [s.strip().lower() for s in value.split(",") if s.strip()]
    invalid = set(stages) - set(STAGES)
    if invalid:
        raise argparse.ArgumentTypeError(
            f"Invalid stages: {', '.join(sorted(invalid))}. Available: {', '.join(STAGES)}"
        )
    return stages


def main():
    """Main entry point for CLI execution."""
    parser = argparse.ArgumentParser(
        description="Run ML signal pipeline stages once",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 backend/jobs/ml_signal_cycle.py
  python3 backend/jobs/ml_signal_cycle.py --stages train
  python3 backend/jobs/ml_signal_cycle.py --stages infer,resolve
        """,
    )

    parser.add_argument(
        "--stages",
        type=parse_stages,
        default=list(STAGES),
        help=f"Comma-separated stages to run (default: all). Available: {', '.join(STAGES)}",
    )

    parser.add_argument(
        "--feature-engine",
        type=str,
        default=os.environ.get("ML_FEATURE_ENGINE", ""),
        help="Feature engine as 'module:attribute' (default: $ML_FEATURE_ENGINE; refresh is skipped without one)",
    )

    args = parser.parse_args()

    try:
        engine = load_feature_engine(args.feature_engine)
    except ConfigurationError as e:
        parser.error(e.message)

    report = run_ml_cycle(args.stages, feature_engine=engine)
    print(json.dumps(report, indent=2, default=str))
    sys.exit(1 if report["first_error"] else 0)


if __name__ == "__main__":
    main()
