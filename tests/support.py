"""
Shared test fixtures: an in-memory database and store scopes bound to it.
"""

from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from kpi_sync.database.models import Base, Integration, Metric, Pillar
from kpi_sync.database.store import MetricStore


def make_engine():
    """Fresh in-memory SQLite database with every table created."""
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    return engine


def make_store_scope(engine):
    """Store scope factory with the same commit/rollback behaviour as the real one."""
    session_factory = sessionmaker(bind=engine)
    
    @contextmanager
    def store_scope():
        session = session_factory()
        try:
            yield MetricStore(session)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
    
    return store_scope


def seed_dashboard(store_scope, integration_type='hubspot', metric_count=3, active=True):
    """
    Create one pillar, `metric_count` metrics and an integration.
    
    Returns:
        (integration_id, [metric_id, ...])
    """
    with store_scope() as store:
        pillar = Pillar(name='Growth', sort_order=1)
        store.session.add(pillar)
        store.session.flush()
        
        metric_ids = []
        for i in range(metric_count):
            metric = Metric(
                pillar_id=pillar.id,
                name=f"Metric {i + 1}",
                data_source=integration_type,
                current_value=10,
                target_value=100
            )
            store.session.add(metric)
            store.session.flush()
            metric_ids.append(metric.id)
        
        integration = Integration(
            type=integration_type,
            name=integration_type.title(),
            config={'accessToken': 'secret-token'},
            is_active=active
        )
        store.session.add(integration)
        store.session.flush()
        return integration.id, metric_ids
