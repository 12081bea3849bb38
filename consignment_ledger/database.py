"""Database configuration and initialization."""
from sqlalchemy import create_engine, BigInteger, Integer
from sqlalchemy.orm import scoped_session, sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

# Create SQLAlchemy base
Base = declarative_base()

# Surrogate keys: BIGINT in PostgreSQL, INTEGER in SQLite (only INTEGER PRIMARY KEY autoincrements)
IdType = BigInteger().with_variant(Integer, 'sqlite')

# Global session and engine
engine = None
db_session = None
session_factory = None


def _engine_options(app, database_uri):
    """Pool options per backend (in-memory SQLite needs a single shared connection)."""
    options = {'echo': app.config.get('SQLALCHEMY_ECHO', False)}
    if database_uri.startswith('sqlite'):
        options['poolclass'] = StaticPool
        options['connect_args'] = {'check_same_thread': False}
    else:
        options['pool_pre_ping'] = True  # Enable connection health checks
        options['pool_size'] = 10
        options['max_overflow'] = 20
    return options


def init_db(app):
    """Initialize database connection."""
    global engine, db_session, session_factory

    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    engine = create_engine(database_uri, **_engine_options(app, database_uri))

    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db_session = scoped_session(session_factory)

    Base.query = db_session.query_property()

    # Register teardown
    @app.teardown_appcontext
    def shutdown_session(exception=None):
        """Close database session and rollback on error."""
        if exception:
            db_session.rollback()
        db_session.remove()


def get_session():
    """Get database session."""
    return db_session


def new_session():
    """Open an independent session (worker threads must not share the request session)."""
    if session_factory is None:
        raise RuntimeError("Database not initialized.")
    return session_factory()


def get_engine():
    """Get SQLAlchemy engine."""
    return engine
