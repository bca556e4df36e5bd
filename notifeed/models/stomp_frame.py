# notifeed/models/stomp_frame.py
from typing import Dict, Optional

from pydantic import BaseModel


class StompFrame(BaseModel):
    command: str
    headers: Dict[str, str] = {}
    body: str = ""

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name, default)
