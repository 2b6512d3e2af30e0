"""
live/telegram_notifier.py: Telegram alert integration.

Sends engine alerts to a Telegram chat using the Bot API.
Uses only stdlib (urllib), no extra dependencies.

Configure via environment variables:
    TELEGRAM_BOT_TOKEN : from BotFather
    TELEGRAM_CHAT_ID   : your personal chat ID

Failures are logged at debug level and never raised, so a Telegram
outage never interrupts the engine.
"""
import os
import json
import logging
import threading
import urllib.request
import urllib.error
from dataclasses import dataclass
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

# ─── Alert Kinds ──────────────────────────────────────────────────
ALERT_OPEN = 'open'
ALERT_CLOSE = 'close'
ALERT_HEDGE = 'hedge'
ALERT_STOP = 'stop'
ALERT_WARN = 'warn'
ALERT_ERROR = 'error'
ALERT_GRIDMOVE = 'gridmove'
ALERT_INFO = 'info'

_EMOJI = {
    ALERT_OPEN:     '🟢',
    ALERT_CLOSE:    '✅',
    ALERT_HEDGE:    '🛡️',
    ALERT_STOP:     '🛑',
    ALERT_WARN:     '⚠️',
    ALERT_ERROR:    '❌',
    ALERT_GRIDMOVE: '🔄',
    ALERT_INFO:     'ℹ️',
}


@dataclass(frozen=True)
class AlertEvent:
    kind: str
    symbol: str
    event: str
    lines: tuple = ()


class TelegramNotifier:
    """Fire-and-forget Telegram message sender.

    Sends messages in a background thread so the main loop
    is never blocked by network latency.
    """

    def __init__(self, token: str = '', chat_id: str = ''):
        self.token   = token   or os.getenv('TELEGRAM_BOT_TOKEN', '')
        self.chat_id = chat_id or os.getenv('TELEGRAM_CHAT_ID', '')
        self.enabled = bool(self.token and self.chat_id)

        if not self.enabled:
            logger.warning(
                'TelegramNotifier: TELEGRAM_BOT_TOKEN or TELEGRAM_CHAT_ID '
                'not set: notifications disabled.')

    # ─── Public API ──────────────────────────────────────────

    def send(self, text: str, silent: bool = False):
        """Send a message (non-blocking)."""
        if not self.enabled:
            return
        threading.Thread(
            target=self._post,
            args=(text, 'HTML', silent),
            daemon=True,
        ).start()

    def send_now(self, text: str, silent: bool = False):
        """Send synchronously (blocks until sent or timeout)."""
        if not self.enabled:
            return
        self._post(text, 'HTML', silent)

    def alert(self, event: AlertEvent):
        self.send(fmt_alert(event), silent=event.kind == ALERT_GRIDMOVE)

    # ─── Internal ────────────────────────────────────────────

    def _post(self, text: str, parse_mode: str = 'HTML', silent: bool = False):
        url = f'https://api.telegram.org/bot{self.token}/sendMessage'
        payload = json.dumps({
            'chat_id':                  self.chat_id,
            'text':                     text,
            'parse_mode':               parse_mode,
            'disable_notification':     silent,
            'disable_web_page_preview': True,
        }).encode()

        req = urllib.request.Request(
            url,
            data=payload,
            headers={'Content-Type': 'application/json'},
            method='POST',
        )
        try:
            with urllib.request.urlopen(req, timeout=8) as resp:
                if resp.status != 200:
                    logger.debug(f'Telegram HTTP {resp.status}')
        except urllib.error.URLError as e:
            logger.debug(f'Telegram send failed: {e}')
        except Exception as e:
            logger.debug(f'Telegram unexpected error: {e}')


# ─── Module-level singleton ───────────────────────────────────────
# Populated by live_trade.py after reading the environment.
_notifier: TelegramNotifier | None = None


def init_notifier(token: str = '', chat_id: str = '') -> TelegramNotifier:
    """Create and register the module-level singleton."""
    global _notifier
    _notifier = TelegramNotifier(token=token, chat_id=chat_id)
    return _notifier


def notify(event: AlertEvent):
    """Deliver via the singleton (no-op if not initialized)."""
    if _notifier:
        _notifier.alert(event)


# ─── Message helpers ──────────────────────────────────────────────

def fmt_alert(event: AlertEvent) -> str:
    ts = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
    emoji = _EMOJI.get(event.kind, '🔔')
    body = '\n'.join(f'<code>{line}</code>' for line in event.lines)
    text = (
        f'{emoji} <b>{event.event}</b>\n'
        f'Symbol: <code>{event.symbol}</code>\n'
    )
    if body:
        text += body + '\n'
    return text + f'Time:   <code>{ts}</code>'


def fmt_start(symbols: list, mode: str) -> str:
    ts = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')
    return (
        f'🟢 <b>ENGINE STARTED</b>\n'
        f'Symbols: <code>{", ".join(symbols)}</code>\n'
        f'Mode:    <code>{mode}</code>\n'
        f'Time:    <code>{ts}</code>'
    )


def fmt_stop(reason: str = 'graceful') -> str:
    ts = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')
    return (
        f'🔴 <b>ENGINE STOPPED</b>\n'
        f'Reason: <code>{reason}</code>\n'
        f'Time:   <code>{ts}</code>'
    )
