"""
Pharmacy KPI API
================
Read-only analytics API for the pharmacy group BI dashboard, running on the
same PostgreSQL database as the ERP sync (materialized views ``mv_*``).

Features:
- Purchases, sales, margin, stock and price KPIs with period comparison
- Order reception rate and ordered/received discrepancies
- Network health (numeric distribution, sales concentration)
- Laboratory, product and category analysis tables
- 12-hour in-process query cache
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime

import asyncpg
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

import config
from data_source import PoolDataSource
from kpi_endpoints import create_kpi_router
from query_cache import query_cache

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("pharmacy_kpi")

pool: asyncpg.Pool = None
connected_host: str = None


async def init_connection(conn):
    """Initialize each connection with the pharmacies' timezone."""
    await conn.execute("SET timezone TO 'Europe/Paris'")


async def _try_host(host: str, ssl, attempts: int, delay: float):
    for attempt in range(attempts):
        try:
            created_pool = await asyncpg.create_pool(
                host=host,
                port=config.DB_PORT,
                database=config.DB_NAME,
                user=config.DB_USER,
                password=config.DB_PASSWORD,
                ssl=ssl,
                min_size=config.DB_POOL_MIN_SIZE,
                max_size=config.DB_POOL_MAX_SIZE,
                command_timeout=config.KPI_QUERY_TIMEOUT_SECONDS,
                init=init_connection,
            )
            async with created_pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return created_pool
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            logger.warning("  Failed (%s, attempt %d): %s", host, attempt + 1, e)
            if attempt < attempts - 1:
                await asyncio.sleep(delay)
    return None


async def create_pool_with_retry():
    """Create connection pool - try internal first (faster), then external."""
    global connected_host

    # Try internal first (faster, private network)
    logger.info("Trying INTERNAL host: %s", config.DB_HOST)
    created_pool = await _try_host(config.DB_HOST, 'require' if config.DB_SSL else False, attempts=2, delay=1)
    if created_pool:
        logger.info("SUCCESS with internal host!")
        connected_host = config.DB_HOST
        return created_pool

    # Fallback to external
    if config.DB_EXTERNAL_HOST:
        logger.info("Trying EXTERNAL host: %s", config.DB_EXTERNAL_HOST)
        created_pool = await _try_host(config.DB_EXTERNAL_HOST, 'require', attempts=3, delay=2)
        if created_pool:
            logger.info("SUCCESS with external host!")
            connected_host = config.DB_EXTERNAL_HOST
            return created_pool

    raise ConnectionError("All connection attempts failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage database connection pool lifecycle."""
    global pool
    pool = await create_pool_with_retry()
    logger.info("Database pool created")

    yield
    if pool:
        await pool.close()
        logger.info("Database pool closed")


app = FastAPI(
    title="Pharmacy KPI API",
    description="KPI and analysis queries for the pharmacy group dashboard",
    version="1.0.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_pool():
    return pool


def get_data_source():
    """Data source getter for the KPI router (None until the pool is up)."""
    if pool is None:
        return None
    return PoolDataSource(pool, timeout=config.KPI_QUERY_TIMEOUT_SECONDS)


# ============================================================================
# Health Check
# ============================================================================

@app.get("/")
async def root():
    return {"app": "Pharmacy KPI API", "version": "1.0.0", "status": "running"}


@app.get("/health")
async def health_check():
    """Check API and database health."""
    db_status = "disconnected"
    current_pool = get_pool()
    if current_pool:
        try:
            async with current_pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                db_status = "connected"
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            db_status = f"error: {str(e)[:50]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "database": db_status,
        "host": connected_host,
        "cache_entries": len(query_cache),
        "timestamp": datetime.now().isoformat()
    }


def verify_api_key(api_key: str):
    """Verify API key for KPI endpoints."""
    if api_key != config.KPI_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid API key")


# Include KPI endpoints router
kpi_router = create_kpi_router(get_data_source, verify_api_key, query_cache)
app.include_router(kpi_router)


@app.get("/api/v1/kpis/cache/stats")
async def cache_stats(api_key: str = Query(...)):
    """Number of cached KPI results and the configured TTL."""
    verify_api_key(api_key)
    return {"entries": len(query_cache), "ttl_seconds": query_cache.ttl}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8002)
