"""
Script to create the MongoDB indexes the flow engine relies on.

This script:
- Creates the unique (flow_id, version) index on flow_versions
- Creates the partial unique index that allows one active session per conversation
- Creates the lookup indexes for triggers, delays and execution logs
- Safe to run multiple times (idempotent)

The service also runs this at startup. Run it by hand before the first deploy
or after restoring a database from backup.
"""

import asyncio
import sys
import os

# Add src directory to path to import modules
script_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(script_dir)
src_dir = os.path.join(project_root, 'src')
sys.path.insert(0, src_dir)

from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from database.flow_db import FlowDB


async def create_flow_indexes():
    log_util = LogUtil()
    environment_utils = EnvironmentUtils(log_util=log_util)
    flow_db = FlowDB(log_util=log_util, environment_utils=environment_utils)

    try:
        log_util.info(service_name="CreateFlowIndexes", message="Creating flow indexes")
        await flow_db.ensure_indexes()
        log_util.info(service_name="CreateFlowIndexes", message="✅ Flow indexes are in place")
    finally:
        flow_db.close()


if __name__ == "__main__":
    print("=" * 60)
    print("Create Flow Engine Indexes")
    print("=" * 60)

    try:
        asyncio.run(create_flow_indexes())
        print("\n[SUCCESS] Indexes created successfully!")
    except KeyboardInterrupt:
        print("\n[WARNING] Script interrupted by user")
        sys.exit(1)
    except Exception as e:
        print(f"\n[ERROR] Script failed with error: {str(e)}")
        sys.exit(1)
