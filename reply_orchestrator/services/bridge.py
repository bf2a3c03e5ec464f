import logging
import subprocess
import time

from reply_orchestrator.config import settings

logger = logging.getLogger(__name__)


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def normalize_handle(handle: str) -> str:
    """Ensure a +1 prefix for bare US numbers; other handles pass through."""
    digits = handle.replace("-", "").replace(" ", "").replace("(", "").replace(")", "")
    if handle.startswith("+") or not digits.isdigit():
        return handle
    if len(digits) == 10:
        return "+1" + digits
    if len(digits) == 11 and digits.startswith("1"):
        return "+" + digits
    return handle


def build_applescript(conversation_id: str, message: str) -> str:
    safe_message = _escape(message)

    if ";" in conversation_id:
        # Full chat guid ("iMessage;-;+1555...", "iMessage;+;chat123...")
        return f'''
        tell application "Messages"
            try
                set theChat to a reference to chat id "{_escape(conversation_id)}"
                send "{safe_message}" to theChat
                return "SUCCESS: Chat id"
            on error e
                return "ERROR: " & e
            end try
        end tell
        '''

    handle = _escape(normalize_handle(conversation_id))
    return f'''
    tell application "Messages"
        try
            set theChat to a reference to chat id ("iMessage;-;" & "{handle}")
            send "{safe_message}" to theChat
            return "SUCCESS: Direct iMessage Chat"
        on error
            try
                set theChat to a reference to chat id ("SMS;-;" & "{handle}")
                send "{safe_message}" to theChat
                return "SUCCESS: Direct SMS Chat"
            on error
                try
                    send "{safe_message}" to buddy "{handle}" of (1st service whose service type is iMessage)
                    return "SUCCESS: iMessage buddy"
                on error e
                    return "ERROR: All strategies failed. " & e
                end try
            end try
        end try
    end tell
    '''


class iMessageBridge:
    def __init__(
        self,
        *,
        retries: int = settings.BRIDGE_SEND_RETRIES,
        backoff: float = settings.BRIDGE_SEND_BACKOFF,
        sleep=time.sleep,
    ) -> None:
        self.retries = max(1, retries)
        self.backoff = backoff
        self._sleep = sleep

    def send_message(self, conversation_id: str, text: str) -> bool:
        """
        Executes AppleScript to send a message via the local Mac Messages app.
        Accepts a chat guid or a bare handle. Retries with exponential backoff.
        """
        for attempt in range(1, self.retries + 1):
            if self._try_send(conversation_id, text):
                return True
            if attempt < self.retries:
                wait = self.backoff * (2 ** (attempt - 1))
                logger.warning(
                    "[BRIDGE] Send attempt %d/%d failed for %s. Retrying in %.1fs",
                    attempt, self.retries, conversation_id, wait,
                )
                self._sleep(wait)

        logger.error("[BRIDGE] All %d send attempts failed for %s", self.retries, conversation_id)
        return False

    def _try_send(self, conversation_id: str, text: str) -> bool:
        """Single send attempt via AppleScript."""
        applescript = build_applescript(conversation_id, text)
        try:
            result = subprocess.run(
                ["osascript", "-"],
                input=applescript.encode("utf-8"),
                check=False,
                capture_output=True,
            )
        except OSError as e:
            logger.error("[BRIDGE] Failed to run osascript for %s: %s", conversation_id, e)
            return False

        output = result.stdout.decode("utf-8").strip()
        stderr = result.stderr.decode("utf-8").strip()
        if result.returncode != 0:
            logger.error("[BRIDGE] osascript failed. returncode=%s, stderr=%s", result.returncode, stderr)
            return False
        if output.startswith("ERROR"):
            logger.error("[BRIDGE] AppleScript error sending to %s: %s", conversation_id, output)
            return False
        logger.info("[BRIDGE] Sent to %s. Result: '%s'", conversation_id, output)
        return True
