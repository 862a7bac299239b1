import json
import logging
import datetime

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger("notes")
audit_logger = logging.getLogger("notes.audit")

def write_audit(action, user_id, workspace_id, page_id=None, before=None, after=None, **extra):
    entry = {
        "ts": datetime.datetime.now(datetime.timezone.utc).isoformat().replace("+00:00", "Z"),
        "user": user_id, "action": action, "workspace_id": workspace_id,
        "page_id": page_id, "before": before, "after": after,
    }
    entry.update(extra)
    audit_logger.info(json.dumps(entry, default=str, sort_keys=True))
