#!/usr/bin/env python3
"""Daemon runner"""
from autobk import create_app
from autobk.scheduler import run_daemon

if __name__ == '__main__':
    app = create_app()

    # Blocks until SIGINT/SIGTERM
    run_daemon(app)
