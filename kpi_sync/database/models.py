"""
SQLAlchemy ORM Models
Pillars, metrics, integrations, mappings and sync logs.
"""

from datetime import datetime

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Float, ForeignKey, Index, Integer,
    String, Text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB(), 'postgresql')


# ============================================
# DASHBOARD MODELS
# ============================================

class Pillar(Base):
    """Strategic pillar grouping metrics."""
    __tablename__ = 'pillars'
    
    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    color_thresholds = Column(JSONType, default=lambda: {'green': 90, 'yellow': 70})
    sort_order = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    
    metrics = relationship("Metric", back_populates="pillar", cascade="all, delete-orphan")


class Metric(Base):
    """
    Tracked KPI.
    
    Status, percentage of target and trend are derived on read by
    kpi_sync.scoring and never stored.
    """
    __tablename__ = 'metrics'
    
    id = Column(Integer, primary_key=True)
    pillar_id = Column(Integer, ForeignKey('pillars.id', ondelete='CASCADE'), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    data_source = Column(String(50), nullable=False, default='manual')  # 'hubspot', 'jira', 'sheets', 'manual'
    metric_type = Column(String(50), nullable=False, default='key_result')
    current_value = Column(Float, nullable=False, default=0)
    target_value = Column(Float, nullable=False, default=0)
    previous_value = Column(Float)
    targets = Column(JSONType)  # {'weekly': {'target': 10, 'warningThreshold': 90, ...}, ...}
    warning_threshold = Column(Float, default=70)
    critical_threshold = Column(Float, default=50)
    comparison_mode = Column(String(50), nullable=False, default='at_or_above')
    cadence = Column(String(50), nullable=False, default='weekly')
    format = Column(String(50), default='number')  # 'number', 'currency', 'percentage'
    unit = Column(String(50))
    sort_order = Column(Integer, default=0)
    last_updated = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    
    pillar = relationship("Pillar", back_populates="metrics")
    history = relationship("MetricHistory", back_populates="metric", cascade="all, delete-orphan")


class MetricHistory(Base):
    """Every value written to a metric."""
    __tablename__ = 'metric_history'
    
    id = Column(Integer, primary_key=True)
    metric_id = Column(Integer, ForeignKey('metrics.id', ondelete='CASCADE'), nullable=False)
    value = Column(Float, nullable=False)
    source = Column(String(50))  # 'sync' or 'manual'
    recorded_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    
    __table_args__ = (
        Index('ix_metric_history_metric_recorded', 'metric_id', 'recorded_at'),
    )
    
    metric = relationship("Metric", back_populates="history")


# ============================================
# INTEGRATION MODELS
# ============================================

class Integration(Base):
    """One external system connection. `config` holds credentials and is never returned unmasked."""
    __tablename__ = 'integrations'
    
    id = Column(Integer, primary_key=True)
    type = Column(String(50), nullable=False, unique=True)  # 'hubspot', 'jira', 'sheets'
    name = Column(String(255))
    config = Column(JSONType, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(DateTime)
    last_sync_status = Column(String(50))  # 'running', 'success', 'failed'
    last_sync_error = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    
    mappings = relationship("IntegrationMapping", back_populates="integration", cascade="all, delete-orphan")
    sync_logs = relationship("IntegrationSyncLog", back_populates="integration", cascade="all, delete-orphan")


class IntegrationMapping(Base):
    """Binds one metric to one integration query."""
    __tablename__ = 'integration_mappings'
    
    id = Column(Integer, primary_key=True)
    integration_id = Column(Integer, ForeignKey('integrations.id', ondelete='CASCADE'), nullable=False)
    metric_id = Column(Integer, ForeignKey('metrics.id', ondelete='CASCADE'), nullable=False)
    query = Column(Text, nullable=False)
    aggregation_method = Column(String(20), nullable=False, default='sum')
    value_field = Column(String(255))
    transformation_rules = Column(JSONType)  # {'divide': n, 'multiply': m}
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    
    __table_args__ = (
        Index('ix_integration_mappings_integration_active', 'integration_id', 'is_active'),
    )
    
    integration = relationship("Integration", back_populates="mappings")
    metric = relationship("Metric")


class IntegrationSyncLog(Base):
    """Append-only audit row for one sync run."""
    __tablename__ = 'integration_sync_logs'
    
    id = Column(Integer, primary_key=True)
    integration_id = Column(Integer, ForeignKey('integrations.id', ondelete='CASCADE'), nullable=False)
    status = Column(String(50), nullable=False, default='running')  # 'running', 'success', 'failed'
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime)
    records_fetched = Column(Integer, default=0)
    records_updated = Column(Integer, default=0)
    error_message = Column(Text)
    
    integration = relationship("Integration", back_populates="sync_logs")
