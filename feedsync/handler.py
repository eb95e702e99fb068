"""Scheduled entry point: synchronize every registered feed."""

import asyncio
import json
import os
from datetime import UTC, datetime
from typing import Any

import boto3

from .config import Config
from .fetch import create_fetcher
from .logging_config import create_execution_logger, setup_structured_logging
from .scheduler import BatchReport, FeedScheduler
from .store import DynamoDBStore
from .sync import FeedUpdater

METRICS_NAMESPACE = "FeedSync"

setup_structured_logging(os.getenv("LOG_LEVEL", "INFO"))


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """
    Run one scheduled synchronization over all feeds.

    Args:
        event: Lambda event data
        context: Lambda context object

    Returns:
        Response dictionary with status and metrics
    """
    execution_id = f"lambda_{datetime.now(UTC).strftime('%Y%m%d_%H%M%S_%f')}"
    main_logger = create_execution_logger("main", execution_id)

    main_logger.log_execution_start(
        lambda_request_id=getattr(context, "aws_request_id", "unknown"),
        lambda_function_name=getattr(context, "function_name", "unknown"),
    )

    metrics = {
        "feeds_processed": 0,
        "feeds_failed": 0,
        "entries_inserted": 0,
        "errors": [],
    }

    try:
        config = Config()
        main_logger.info("Configuration initialized")

        report = asyncio.run(run_scheduled_sync(config, execution_id))
        if report.error:
            raise RuntimeError(report.error.message)

        metrics["feeds_processed"] = report.total_feeds
        metrics["feeds_failed"] = report.total_errors
        metrics["entries_inserted"] = report.total_new_entries
        metrics["errors"] = [
            f"Feed {outcome.feed_id}: {outcome.error.message}"
            for outcome in report.outcomes
            if outcome.error
        ]

        main_logger.log_metrics(metrics)
        send_cloudwatch_metrics(metrics, config.aws_region, execution_id)
        main_logger.log_execution_end(success=True, metrics=metrics)

        return {
            "statusCode": 200,
            "body": json.dumps(
                {
                    "message": "Feed update completed",
                    "execution_id": execution_id,
                    "summary": report.to_dict(),
                }
            ),
        }

    except Exception as e:
        error_msg = f"Critical error in feed update: {str(e)}"
        main_logger.error(error_msg, error=str(e))
        metrics["errors"].append(error_msg)

        send_cloudwatch_metrics(
            metrics,
            config.aws_region if "config" in locals() else "us-east-1",
            execution_id,
        )
        main_logger.log_execution_end(success=False, metrics=metrics, error=error_msg)

        return {
            "statusCode": 500,
            "body": json.dumps(
                {
                    "message": "Feed update failed",
                    "execution_id": execution_id,
                    "error": error_msg,
                    "metrics": metrics,
                }
            ),
        }


async def run_scheduled_sync(config: Config, execution_id: str) -> BatchReport:
    """Wire the DynamoDB store, fetcher and scheduler, then sync everything."""
    store = DynamoDBStore(config.get_store_config(), execution_id=execution_id)
    async with create_fetcher(
        config.get_fetch_config(), execution_id=execution_id
    ) as fetcher:
        updater = FeedUpdater(store, fetcher, execution_id=execution_id)
        scheduler = FeedScheduler(
            store, updater, config.get_schedule_config(), execution_id=execution_id
        )
        return await scheduler.sync_everything()


def send_cloudwatch_metrics(
    metrics: dict[str, Any], aws_region: str, execution_id: str
) -> None:
    """
    Send custom metrics to CloudWatch.

    Args:
        metrics: Dictionary containing execution metrics
        aws_region: AWS region for CloudWatch client
        execution_id: Execution ID for logging context
    """
    metrics_logger = create_execution_logger("cloudwatch_metrics", execution_id)

    try:
        metrics_logger.info("Sending metrics to CloudWatch", metrics=metrics)
        cloudwatch = boto3.client("cloudwatch", region_name=aws_region)

        total_errors = len(metrics["errors"])
        execution_success = total_errors == 0
        execution_dimension = [{"Name": "ExecutionId", "Value": execution_id}]
        status_dimension = [
            {"Name": "Status", "Value": "Success" if execution_success else "Failure"}
        ]

        metric_data = [
            {
                "MetricName": "FeedsProcessed",
                "Value": metrics["feeds_processed"],
                "Unit": "Count",
                "Dimensions": execution_dimension,
            },
            {
                "MetricName": "FeedsFailed",
                "Value": metrics["feeds_failed"],
                "Unit": "Count",
                "Dimensions": execution_dimension,
            },
            {
                "MetricName": "EntriesInserted",
                "Value": metrics["entries_inserted"],
                "Unit": "Count",
                "Dimensions": execution_dimension,
            },
            {
                "MetricName": "Errors",
                "Value": total_errors,
                "Unit": "Count",
                "Dimensions": execution_dimension,
            },
            {
                "MetricName": "ExecutionSuccess",
                "Value": 1 if execution_success else 0,
                "Unit": "Count",
                "Dimensions": status_dimension,
            },
            {
                "MetricName": "ExecutionFailure",
                "Value": 0 if execution_success else 1,
                "Unit": "Count",
                "Dimensions": status_dimension,
            },
        ]

        # CloudWatch accepts at most 20 metrics per call
        batch_size = 20
        for i in range(0, len(metric_data), batch_size):
            batch = metric_data[i : i + batch_size]
            cloudwatch.put_metric_data(Namespace=METRICS_NAMESPACE, MetricData=batch)
            metrics_logger.debug(f"Sent batch of {len(batch)} metrics to CloudWatch")

        metrics_logger.info(
            "Successfully sent metrics to CloudWatch",
            metrics_sent=len(metric_data),
            namespace=METRICS_NAMESPACE,
            execution_success=execution_success,
        )

    except Exception as e:
        metrics_logger.error(f"Failed to send CloudWatch metrics: {e}", error=str(e))
