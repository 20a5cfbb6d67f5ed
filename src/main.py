import sys
import time
import yaml
import os
import logging
from collections import OrderedDict
from typing import Dict, Any, List, Optional, Tuple

from consumers.clickhouse_consumer import ClickHouseConsumer, build_client
from detection.sigma_engine import SigmaDetectionEngine, group_matches_by_rule
from alerts.alert_manager import AlertManager, build_sigma_notifications
from alerts.rule_evaluator import AlertRuleEvaluator
from storage.clickhouse_history import ClickHouseAlertHistoryRepository
from storage.rule_files import FileAlertRuleRepository, FileSigmaRuleRepository
from utils.checkpoint import CheckpointManager
from utils.config import expand_env_vars
from utils.rule_cache import RuleSetCache
from utils.rule_lock import RuleLock

logger = logging.getLogger(__name__)


def setup_logging(config: Dict[str, Any]):
    """Configure logging based on config."""
    log_config = config.get('logging', {})
    log_level = getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO)
    log_file = log_config.get('file')

    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )

    # Set specific loggers to avoid spam
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('clickhouse_driver').setLevel(logging.INFO)


def load_config(path: str) -> Dict[str, Any]:
    """Load YAML configuration file with environment variable expansion."""
    with open(path, 'r') as f:
        return yaml.safe_load(expand_env_vars(f.read())) or {}


def group_logs_by_tenant(logs: List[Dict[str, Any]]) -> "OrderedDict[Tuple[str, Optional[str]], List[Dict[str, Any]]]":
    groups: "OrderedDict[Tuple[str, Optional[str]], List[Dict[str, Any]]]" = OrderedDict()
    for log in logs:
        organization_id = log.get('organization_id')
        if not organization_id:
            logger.debug("Skipping log without organization_id")
            continue
        groups.setdefault((organization_id, log.get('project_id') or None), []).append(log)
    return groups


def detect_and_notify(logs: List[Dict[str, Any]], engine: SigmaDetectionEngine, sigma_rules: Any,
                      alerter: AlertManager) -> int:
    """
    Run Sigma detection over one polled batch and dispatch the resulting notifications.

    Returns:
        Number of notifications dispatched
    """
    dispatched = 0
    for (organization_id, project_id), tenant_logs in group_logs_by_tenant(logs).items():
        results = engine.evaluate_batch(tenant_logs, organization_id, project_id)
        grouped = group_matches_by_rule(results)
        if not grouped:
            continue

        for payload in build_sigma_notifications(grouped, sigma_rules, organization_id, project_id):
            try:
                alerter.process_notification(payload)
                dispatched += 1
            except Exception as e:
                logger.error(f"Error sending Sigma notification {payload['rule_name']!r}: {e}", exc_info=True)
    return dispatched


def run_alert_checks(evaluator: AlertRuleEvaluator, alerter: AlertManager) -> int:
    triggered = evaluator.check_alert_rules()
    for payload in triggered:
        try:
            alerter.process_notification(payload)
        except Exception as e:
            logger.error(f"Error sending alert {payload['rule_name']!r}: {e}", exc_info=True)
    return len(triggered)


def main():
    # Load config first (before logging setup)
    config_path = os.environ.get('CONFIG_PATH', 'config/config.yaml')

    if not os.path.exists(config_path):
        print(f"Error: Config file not found at {config_path}")
        sys.exit(1)

    config = load_config(config_path)

    setup_logging(config)

    logger.info("=" * 60)
    logger.info("Starting Detection & Alerting Service")
    logger.info("=" * 60)

    try:
        checkpoint_path = config.get('checkpoint', {}).get('file', 'data/checkpoint.json')
        checkpoint_manager = CheckpointManager(checkpoint_path)
        logger.info(f"Checkpoint manager initialized: {checkpoint_path}")

        clickhouse_config = config['clickhouse']
        sigma_config = config.get('sigma', {})
        alerts_config = config.get('alerts', {})
        redis_config = config.get('redis', {})

        client = build_client(clickhouse_config)
        consumer = ClickHouseConsumer(clickhouse_config, checkpoint_manager, client=client)

        sigma_rules = FileSigmaRuleRepository(sigma_config.get('rules_paths', []))
        cache = RuleSetCache(ttl_seconds=sigma_config.get('cache_ttl_seconds', 60))
        engine = SigmaDetectionEngine(sigma_rules, cache=cache)

        history = ClickHouseAlertHistoryRepository(client, alerts_config)
        alert_rules = FileAlertRuleRepository(alerts_config.get('rules_file'))
        lock = RuleLock(
            ttl_seconds=redis_config.get('lock_ttl_seconds', 60),
            use_redis=redis_config.get('use_redis', False),
            redis_config=redis_config,
        )
        evaluator = AlertRuleEvaluator(alert_rules, history, consumer, lock=lock)
        alerter = AlertManager(config.get('notifications', {}), history)

        logger.info("All components initialized successfully")

    except Exception as e:
        logger.error(f"Error initializing components: {e}", exc_info=True)
        sys.exit(1)

    poll_interval = clickhouse_config.get('poll_interval', 5)
    check_interval = alerts_config.get('check_interval_seconds', 60)
    stats_interval = config.get('stats_interval', 60)
    last_check_time = 0.0
    last_stats_time = time.time()

    logger.info(f"Poll interval: {poll_interval}s, alert check interval: {check_interval}s")
    logger.info("Entering main processing loop")

    while True:
        try:
            # Process as many batches as are immediately available.
            while True:
                logs = consumer.fetch_logs()

                if logs:
                    logger.info(f"Processing {len(logs)} logs...")
                    sent = detect_and_notify(logs, engine, sigma_rules, alerter)
                    if sent:
                        logger.info(f"Dispatched {sent} Sigma notification(s)")

                if not logs or len(logs) < consumer.batch_size:
                    break

            current_time = time.time()
            if current_time - last_check_time >= check_interval:
                run_alert_checks(evaluator, alerter)
                last_check_time = current_time

            if current_time - last_stats_time >= stats_interval:
                logger.info("=" * 60)
                logger.info("System Statistics:")
                logger.info(f"Consumer lag: {consumer.lag()}")
                logger.info(f"Rule set cache: {cache.get_stats()}")
                logger.info(f"Alert Manager: {alerter.get_stats()}")
                logger.info("=" * 60)
                last_stats_time = current_time

        except KeyboardInterrupt:
            logger.info("Received shutdown signal")
            break
        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)

        try:
            time.sleep(poll_interval)
        except KeyboardInterrupt:
            logger.info("Received shutdown signal")
            break

    logger.info("Detection & Alerting Service stopped")


if __name__ == '__main__':
    main()
