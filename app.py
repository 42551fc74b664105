#!/usr/bin/env python3

import logging
import os

import uvicorn

from backend.chatstream.main import create_app

if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    app = create_app()
    uvicorn.run(app, host='0.0.0.0', port=int(os.environ.get('PORT', '7000')), log_level='info')
