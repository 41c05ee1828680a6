"""
Append-only audit trail and usage records, with DataFrame export for
dispute resolution
"""

import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Union

import pandas as pd
from loguru import logger

from .models import CampaignAudit, CampaignUsage

audit_logger = logger.bind(audit=True)


def log_audit_rows(rows: List[CampaignAudit]) -> None:
    for row in rows:
        audit_logger.info(f"{row.action} campaign={row.campaign_id} customer={row.customer_id}")


class AuditSink(ABC):
    """Destination of CampaignUsage and CampaignAudit rows"""

    @abstractmethod
    def write(self, usage_rows: List[CampaignUsage], audit_rows: List[CampaignAudit]) -> None:
        """Append usage and audit rows together; either all of them are stored or none"""

    def write_usage(self, rows: List[CampaignUsage]) -> None:
        self.write(rows, [])

    def write_audit(self, rows: List[CampaignAudit]) -> None:
        self.write([], rows)


class InMemoryAuditSink(AuditSink):
    """Keeps rows in process memory; rows are never updated or removed"""

    def __init__(self):
        self._lock = threading.Lock()
        self._usage: List[CampaignUsage] = []
        self._audit: List[CampaignAudit] = []

    def write(self, usage_rows: List[CampaignUsage], audit_rows: List[CampaignAudit]) -> None:
        with self._lock:
            self._usage.extend(usage_rows)
            self._audit.extend(audit_rows)
        log_audit_rows(audit_rows)

    @property
    def usage_rows(self) -> List[CampaignUsage]:
        with self._lock:
            return list(self._usage)

    @property
    def audit_rows(self) -> List[CampaignAudit]:
        with self._lock:
            return list(self._audit)


AUDIT_COLUMNS = ['id', 'campaign_id', 'customer_id', 'action', 'reason', 'timestamp', 'details']
USAGE_COLUMNS = [
    'id', 'campaign_id', 'coupon_code', 'customer_id', 'order_id',
    'discount_amount', 'currency', 'applied_at'
]


def audit_frame(rows: List[CampaignAudit]) -> pd.DataFrame:
    """One DataFrame row per audit record, reason lifted out of the details"""
    records = [
        {
            'id': row.id,
            'campaign_id': row.campaign_id,
            'customer_id': row.customer_id,
            'action': row.action,
            'reason': row.details.get('reason', ''),
            'timestamp': row.timestamp,
            'details': row.details,
        }
        for row in rows
    ]
    return pd.DataFrame(records, columns=AUDIT_COLUMNS)


def usage_frame(rows: List[CampaignUsage]) -> pd.DataFrame:
    records = [
        {
            'id': row.id,
            'campaign_id': row.campaign_id,
            'coupon_code': row.coupon_code,
            'customer_id': row.customer_id,
            'order_id': row.order_id,
            'discount_amount': row.discount_amount.amount,
            'currency': row.discount_amount.currency,
            'applied_at': row.applied_at,
        }
        for row in rows
    ]
    return pd.DataFrame(records, columns=USAGE_COLUMNS)


USAGE_SUMMARY_COLUMNS = ['campaign_id', 'applications', 'total_discount', 'unique_customers', 'average_discount']


def summarize_usage(rows: List[CampaignUsage]) -> pd.DataFrame:
    """Applications, total and average discount and unique customers per campaign"""
    frame = usage_frame(rows)
    if frame.empty:
        return pd.DataFrame(columns=USAGE_SUMMARY_COLUMNS)
    return (
        frame.groupby('campaign_id')
        .agg(
            applications=('id', 'count'),
            total_discount=('discount_amount', 'sum'),
            unique_customers=('customer_id', 'nunique'),
            average_discount=('discount_amount', 'mean'),
        )
        .reset_index()
    )


def export_audit_csv(rows: List[CampaignAudit], output_file: Union[str, Path]) -> Path:
    output_path = Path(output_file)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    audit_frame(rows).to_csv(output_path, index=False)
    logger.info(f"Exported {len(rows)} audit rows to {output_path}")
    return output_path
