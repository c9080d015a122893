"""
Splitledger Backend API

A FastAPI backend for shared expenses and the pairwise balance ledger behind them.
This module sets up the app and mounts routers - all endpoint logic is in routers/.
"""

import logging
import os
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import models
from database import engine
from utils.errors import LedgerError

# Import routers
from routers import groups, expenses, balances, friends, settlements, reminders, analytics


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)

# Create database tables
models.Base.metadata.create_all(bind=engine)

# Initialize FastAPI app
app = FastAPI(
    title="Splitledger API",
    description="API for expense splitting, balances and settlements",
    version="1.0.0"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, restrict this to frontend domain
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


# Include routers
app.include_router(groups.router)
app.include_router(expenses.router)
app.include_router(balances.router)
app.include_router(friends.router)
app.include_router(settlements.router)
app.include_router(reminders.router)
app.include_router(analytics.router)
