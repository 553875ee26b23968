# Root folder: ci-triage/main_agent.py
#
# Wires everything together and triages webhook payloads:
# 1. Loads settings once
# 2. Builds the GitHub client, storage and agent components
# 3. Normalizes each payload file and runs it through the orchestrator
#
# Run with: python main_agent.py payload.json [payload2.json ...]

import argparse
import json
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stderr)]
)

logger = logging.getLogger(__name__)


def build_orchestrator(settings, sink=None):
    """
    All components, constructed once and shared by every event.
    Returns the orchestrator and the close() calls to run on shutdown.
    """
    from actions.github_client import GitHubClient
    from actions.issue_publisher import IssuePublisher
    from agent.analysis_client import AnalysisClient, AnthropicCompleter
    from agent.evidence_collector import EvidenceCollector
    from agent.gating import Gate
    from agent.orchestrator import TriageOrchestrator
    from agent.verification import VerificationEngine
    from storage.fingerprint_store import FingerprintStore

    github = GitHubClient(settings)
    store = FingerprintStore(settings.fingerprint_db_path)
    logger.info("✅ Storage initialized")

    collector = EvidenceCollector(
        github,
        max_candidates=settings.max_candidate_files,
        max_dependencies=settings.max_dependencies,
    )
    analysis = AnalysisClient(settings, AnthropicCompleter(settings))
    gate = Gate(VerificationEngine(github), settings.min_confidence_to_create)
    publisher = IssuePublisher(github, store, gate, web_base_url=settings.github_web_url)

    logger.info("✅ Agent components initialized")
    orchestrator = TriageOrchestrator(settings, github, collector, analysis, publisher, sink=sink)
    return orchestrator, [analysis.close, store.close]


def main(argv=None):
    parser = argparse.ArgumentParser(description="Triage GitHub Actions webhook payloads")
    parser.add_argument("payloads", nargs="+", help="webhook payload JSON files ('-' for stdin)")
    parser.add_argument("--event-name", help="X-GitHub-Event value, if known")
    parser.add_argument("--debug", action="store_true", help="log event sink records")
    args = parser.parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    from agent.event_sink import LoggingEventSink, NullEventSink
    from config import Settings
    from ingestion.normalizer import normalize_event

    settings = Settings.from_env()
    if not settings.github_token:
        logger.warning("GITHUB_TOKEN not set - code host calls will be unauthenticated")
    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY not set - model analysis will fall back")

    sink = LoggingEventSink() if args.debug else NullEventSink()
    orchestrator, closers = build_orchestrator(settings, sink=sink)

    exit_code = 0
    try:
        for path in args.payloads:
            if path == "-":
                payload = json.load(sys.stdin)
            else:
                with open(path, "r") as f:
                    payload = json.load(f)

            event = normalize_event(payload, args.event_name)
            outcome = orchestrator.process(event)
            print(outcome.model_dump_json(exclude_none=True))

            if outcome.status.value == "failed":
                exit_code = 1
    finally:
        for close in closers:
            close()
        logger.info("🛑 Components closed")

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
