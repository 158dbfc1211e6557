"""
Pattern Meta-Strategy Replay Runner
===================================
Feeds a JSON-lines file of candle + indicator records through the engine
and logs every buy / sell decision.

    algo1meta-replay candles.jsonl
    ALGO1META_SETTINGS=settings.json python main.py candles.jsonl
"""

import json
import logging
import sys
from typing import Any, Dict, List, Optional

import config
from notifier import Notifier
from settings import EngineSettings
from strategy import SIGNAL_NONE, PatternMetaStrategy, Signal

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if config.LOG_FILE:
        handlers.append(logging.FileHandler(config.LOG_FILE))
    logging.basicConfig(
        level=getattr(config, "LOG_LEVEL", "INFO"),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def load_settings(path: Optional[str] = None) -> EngineSettings:
    """Flat settings map from a JSON file; defaults when no file is set."""
    path = path if path is not None else config.SETTINGS_FILE
    if not path:
        return EngineSettings()
    with open(path, "r", encoding="utf-8") as fh:
        flat: Dict[str, Any] = json.load(fh)
    logger.info(f"Loaded {len(flat)} settings from {path}")
    return EngineSettings.from_mapping(flat)


def replay(path: str, settings: Optional[EngineSettings] = None,
           publisher=None) -> List[Signal]:
    engine = PatternMetaStrategy(settings, publisher=publisher)
    decisions: List[Signal] = []

    with open(path, "r", encoding="utf-8") as fh:
        for line_no, line in enumerate(fh, 1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning(f"⚠️ Line {line_no}: invalid JSON ({e})")
                continue

            signal = engine.on_bar(record)
            if signal.signal != SIGNAL_NONE:
                decisions.append(signal)
                logger.info(f"🎯 {signal.signal.upper()} {signal.to_dict()}")

    stats = engine.get_strategy_stats()
    logger.info("=" * 70)
    logger.info(f"📊 Replay done: {stats['ticks']} ticks | {len(decisions)} decisions")
    logger.info(f"   Trades: {stats['trades']}")
    logger.info(f"   Breaker: {stats['breaker']}")
    logger.info("=" * 70)
    return decisions


def main() -> None:
    setup_logging()
    if len(sys.argv) < 2:
        logger.error("Usage: algo1meta-replay <candles.jsonl>")
        sys.exit(2)

    notifier = None
    if config.WEBHOOK_URL or config.TRADE_HISTORY_FILE:
        notifier = Notifier(webhook_url=config.WEBHOOK_URL,
                            history_file=config.TRADE_HISTORY_FILE)

    try:
        replay(sys.argv[1], load_settings(), publisher=notifier)
    except Exception:
        logger.exception("❌ Replay failed")
        sys.exit(1)
    finally:
        if notifier is not None:
            notifier.stop()


if __name__ == "__main__":
    main()
