import logging

from sqlalchemy import Engine, inspect, text

logger = logging.getLogger(__name__)


def get_table_names(appname: str = '') -> dict[str, str]:
    """Get table names based on appname prefix.

    Args
        appname: Application name prefix for tables

    Returns
        Dictionary containing table names
    """
    return {
        'Account': f'{appname}accounts',
        'Device': f'{appname}devices',
    }


def verify_tables_exist(engine: Engine, appname: str = '') -> dict[str, bool]:
    """Verify which required tables exist in the database.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables

    Returns
        Dictionary mapping table keys to existence status (True if exists, False otherwise)
    """
    tables = get_table_names(appname)
    existing = set(inspect(engine).get_table_names())
    return {key: name in existing for key, name in tables.items()}


def _create_account_tables(engine: Engine, tables: dict[str, str]) -> None:
    """Create Account and Device tables.
    """
    Account = tables['Account']
    Device = tables['Device']

    with engine.connect() as conn:
        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Account} (
    id integer not null,
    last_checked_at double precision not null default 0,
    last_enqueued_at double precision not null default 0,
    primary key (id)
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Account}_last_checked ON {Account}(last_checked_at)'))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Device} (
    id integer not null,
    apns_token varchar,
    primary key (id)
);
        """))

        conn.commit()

    logger.debug(f'Account tables verified: {Account}, {Device}')


def ensure_database_ready(engine: Engine, appname: str = '') -> None:
    """Ensure database has all required tables with correct structure.

    Safe to call repeatedly - uses CREATE TABLE IF NOT EXISTS.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables
    """
    tables = get_table_names(appname)

    table_status = verify_tables_exist(engine, appname)
    missing_tables = [k for k, exists in table_status.items() if not exists]
    if missing_tables:
        logger.info(f'Creating missing tables: {missing_tables}')

    try:
        _create_account_tables(engine, tables)
    except Exception as e:
        logger.error(f'Failed to create tables: {e}')
        raise

    logger.info('Database structure verified and ready')
