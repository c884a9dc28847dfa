"""Database configuration and initialization."""
from sqlalchemy import BigInteger, Integer, create_engine, event
from sqlalchemy.orm import scoped_session, sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

# Create SQLAlchemy base
Base = declarative_base()

# BIGINT ids, INTEGER on SQLite so the column aliases ROWID and autoincrements
IdType = BigInteger().with_variant(Integer, 'sqlite')

# Global session and engine
engine = None
db_session = None


def build_engine(database_uri: str, echo: bool = False):
    """
    Create an engine for the given URI.

    SQLite engines open every transaction with BEGIN IMMEDIATE so that
    concurrent writers queue on the database lock instead of failing with
    a lock-upgrade deadlock.
    """
    if database_uri.startswith('sqlite'):
        options = {'connect_args': {'check_same_thread': False, 'timeout': 30}}
        if database_uri in ('sqlite://', 'sqlite:///:memory:'):
            options['poolclass'] = StaticPool
        sqlite_engine = create_engine(database_uri, echo=echo, **options)
        _use_immediate_transactions(sqlite_engine)
        return sqlite_engine

    return create_engine(
        database_uri,
        echo=echo,
        pool_pre_ping=True,  # Enable connection health checks
        pool_size=10,
        max_overflow=20
    )


def _use_immediate_transactions(sqlite_engine):
    @event.listens_for(sqlite_engine, 'connect')
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, 'begin')
    def _begin_immediate(conn):
        conn.exec_driver_sql('BEGIN IMMEDIATE')


def init_db(app):
    """Initialize database connection."""
    global engine, db_session

    engine = build_engine(
        app.config['SQLALCHEMY_DATABASE_URI'],
        echo=app.config.get('SQLALCHEMY_ECHO', False)
    )

    db_session = scoped_session(
        sessionmaker(autocommit=False, autoflush=False, bind=engine)
    )

    Base.query = db_session.query_property()

    # Register teardown
    @app.teardown_appcontext
    def shutdown_session(exception=None):
        """Close database session and rollback on error."""
        if exception:
            db_session.rollback()
        db_session.remove()


def create_all():
    """Create every table registered on Base (used by tests and `flask init-db`)."""
    import storefront.models  # noqa: F401
    Base.metadata.create_all(bind=engine)


def get_session():
    """Get database session."""
    return db_session
