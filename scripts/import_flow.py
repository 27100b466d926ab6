"""
Script to import a flow exported from the editor into an organization.

Usage:
    python scripts/import_flow.py <organization_id> <flow.json>

The JSON file holds the flow settings and its graph:
    {
        "name": "Atendimento",
        "trigger_keywords": ["oi"],
        "trigger_match_mode": "exact",
        "nodes": [...],
        "edges": [...]
    }

Nodes and edges may be in stored shape or in the editor's shape. The flow is created
as an inactive draft, then the graph is saved through the same validation as the editor.
"""

import asyncio
import json
import sys
import os

# Add src directory to path to import modules
script_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(script_dir)
src_dir = os.path.join(project_root, 'src')
sys.path.insert(0, src_dir)

from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from database.flow_db_factory import create_flow_db
from services.flow_service import FlowService
from models.request.flow_request import FlowCreateRequest


async def import_flow(organization_id: str, file_path: str):
    log_util = LogUtil()
    environment_utils = EnvironmentUtils(log_util=log_util)
    flow_db = create_flow_db(log_util=log_util, environment_utils=environment_utils)
    flow_service = FlowService(log_util=log_util, flow_db=flow_db)

    with open(file_path, encoding="utf-8") as flow_file:
        payload = json.load(flow_file)

    try:
        request = FlowCreateRequest.model_validate({
            key: value for key, value in payload.items() if key not in ("nodes", "edges")
        })
        flow = await flow_service.create_flow(organization_id=organization_id, user_id=None, request=request)
        saved = await flow_service.save_canvas(
            organization_id=organization_id,
            flow_id=flow.id,
            nodes=payload.get("nodes", []),
            edges=payload.get("edges", []),
            editor_id=None
        )
        print(f"Imported flow '{saved.name}' with ID {saved.id} (version {saved.version}, {len(saved.nodes)} nodes)")
    finally:
        flow_db.close()


if __name__ == "__main__":
    if len(sys.argv) != 3:
        print(__doc__)
        sys.exit(1)

    try:
        asyncio.run(import_flow(sys.argv[1], sys.argv[2]))
        print("\n[SUCCESS] Script completed successfully!")
    except KeyboardInterrupt:
        print("\n[WARNING] Script interrupted by user")
        sys.exit(1)
    except Exception as e:
        print(f"\n[ERROR] Script failed with error: {str(e)}")
        sys.exit(1)
