import re
from typing import Optional, List

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_db_base import BaseFlowDB

# Models
from models.flow_data import FlowData


class TriggerIdentificationService:
    """
    Decides which flow, if any, an inbound message starts.

    Candidates are active, published, trigger-enabled flows of the organization that accept
    the connection. They are checked most-recently-updated first (ties broken by id) and the
    first flow with a matching keyword wins.
    """

    def __init__(self, log_util: LogUtil, flow_db: BaseFlowDB):
        self.log_util = log_util
        self.flow_db = flow_db

    def keyword_matches(self, keyword: str, text: str, match_mode: str) -> bool:
        keyword = (keyword or "").strip()
        if not keyword:
            return False

        if match_mode == "regex":
            try:
                return re.search(keyword, text, re.IGNORECASE) is not None
            except re.error as e:
                self.log_util.warning(
                    service_name="TriggerIdentificationService",
                    message=f"[TRIGGER_CHECK] ⚠️ Invalid trigger pattern '{keyword}' skipped: {str(e)}"
                )
                return False

        keyword_lower = keyword.lower()
        text_lower = text.lower()
        if match_mode == "contains":
            return keyword_lower in text_lower
        if match_mode == "starts_with":
            return text_lower.startswith(keyword_lower)
        return text_lower == keyword_lower

    def flow_matches(self, flow: FlowData, text: str) -> bool:
        return any(self.keyword_matches(keyword, text, flow.trigger_match_mode) for keyword in flow.trigger_keywords)

    async def match_trigger(
        self,
        organization_id: str,
        connection_id: Optional[str],
        inbound_text: Optional[str]
    ) -> Optional[FlowData]:
        """
        Return the flow the inbound text triggers, or None
        """
        text = (inbound_text or "").strip()
        if not text:
            return None

        candidates: List[FlowData] = await self.flow_db.get_trigger_candidates(organization_id)
        for flow in candidates:
            if not flow.accepts_connection(connection_id):
                continue
            if self.flow_matches(flow, text):
                self.log_util.info(
                    service_name="TriggerIdentificationService",
                    message=f"[TRIGGER_CHECK] ✅ Trigger matched flow '{flow.name}' (id: {flow.id}, mode: {flow.trigger_match_mode})"
                )
                return flow

        self.log_util.info(
            service_name="TriggerIdentificationService",
            message=f"[TRIGGER_CHECK] No trigger matched for organization {organization_id} ({len(candidates)} candidates)"
        )
        return None
