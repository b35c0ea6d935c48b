from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger
from psycopg2.extras import Json

from .connection import fetch_all, execute_query

RETENTION_CLAUSE = "created_at >= NOW() - make_interval(days => %s)"


def insert_analytics_event_db(event: Dict[str, Any]) -> None:
    query = """
    INSERT INTO ai_analytics (
        operation_type, user_phone, success, response_time_ms, cached,
        error_code, error_message, metadata
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s);
    """
    params = (
        event["operation_type"],
        event.get("user_phone"),
        event["success"],
        event["response_time_ms"],
        event.get("cached", False),
        event.get("error_code"),
        event.get("error_message"),
        Json(event.get("metadata") or {}),
    )
    execute_query(query, params)


def purge_expired_events_db(retention_days: int) -> int:
    query = "DELETE FROM ai_analytics WHERE created_at < NOW() - make_interval(days => %s)"
    removed = execute_query(query, (retention_days,))
    if removed:
        logger.info(f"purge_expired_events_db: removed {removed} events older than {retention_days} days")
    return removed


def fetch_event_samples_db(
    retention_days: int,
    operation_type: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Latency/outcome samples for in-process aggregation."""
    clauses = [RETENTION_CLAUSE]
    params: List[Any] = [retention_days]
    if operation_type:
        clauses.append("operation_type = %s")
        params.append(operation_type)
    if start:
        clauses.append("created_at >= %s")
        params.append(start)
    if end:
        clauses.append("created_at <= %s")
        params.append(end)

    query = (
        "SELECT success, response_time_ms, cached FROM ai_analytics WHERE "
        + " AND ".join(clauses)
    )
    return [dict(row) for row in fetch_all(query, tuple(params))]


def daily_stats_db(
    retention_days: int, days: int = 7, operation_type: Optional[str] = None
) -> List[Dict[str, Any]]:
    clauses = [RETENTION_CLAUSE, "created_at >= date_trunc('day', NOW()) - make_interval(days => %s)"]
    params: List[Any] = [retention_days, days]
    if operation_type:
        clauses.append("operation_type = %s")
        params.append(operation_type)

    query = f"""
    SELECT to_char(created_at, 'YYYY-MM-DD') AS date,
           COUNT(*) AS total_requests,
           COUNT(*) FILTER (WHERE success) AS success_count,
           COUNT(*) FILTER (WHERE NOT success) AS error_count,
           ROUND(AVG(response_time_ms))::int AS avg_response_time
    FROM ai_analytics
    WHERE {" AND ".join(clauses)}
    GROUP BY 1
    ORDER BY 1 ASC;
    """
    return [dict(row) for row in fetch_all(query, tuple(params))]


def top_errors_db(
    retention_days: int, limit: int = 10, start: Optional[datetime] = None
) -> List[Dict[str, Any]]:
    clauses = [RETENTION_CLAUSE, "success = FALSE", "error_code IS NOT NULL"]
    params: List[Any] = [retention_days]
    if start:
        clauses.append("created_at >= %s")
        params.append(start)
    params.append(limit)

    query = f"""
    SELECT error_code,
           COUNT(*) AS count,
           COUNT(*) * 100.0 / SUM(COUNT(*)) OVER () AS percentage
    FROM ai_analytics
    WHERE {" AND ".join(clauses)}
    GROUP BY error_code
    ORDER BY count DESC
    LIMIT %s;
    """
    return [
        {**row, "percentage": float(row["percentage"])}
        for row in fetch_all(query, tuple(params))
    ]


def user_usage_db(
    retention_days: int, limit: int = 20, start: Optional[datetime] = None
) -> List[Dict[str, Any]]:
    clauses = [RETENTION_CLAUSE, "user_phone IS NOT NULL"]
    params: List[Any] = [retention_days]
    if start:
        clauses.append("created_at >= %s")
        params.append(start)
    params.append(limit)

    query = f"""
    SELECT user_phone,
           COUNT(*) AS total_requests,
           COUNT(*) FILTER (WHERE operation_type = 'chat') AS chat_requests,
           COUNT(*) FILTER (WHERE operation_type = 'diagnosis') AS diagnosis_requests,
           COUNT(*) FILTER (WHERE operation_type = 'planning') AS planning_requests,
           ROUND(AVG(response_time_ms))::int AS avg_response_time
    FROM ai_analytics
    WHERE {" AND ".join(clauses)}
    GROUP BY user_phone
    ORDER BY total_requests DESC
    LIMIT %s;
    """
    return [dict(row) for row in fetch_all(query, tuple(params))]
