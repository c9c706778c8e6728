# Database utilities package
from .sql import (
    run_sql,
    run_sql_scalar,
    run_sql_one,
    run_sql_exec,
)
from .engine import get_engine, session_factory, dispose_engines
