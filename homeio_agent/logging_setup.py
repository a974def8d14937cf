import gzip
import json
import logging
import os
import shutil
from datetime import datetime, timedelta
from logging import Handler, LogRecord
from pathlib import Path
from typing import Any, Dict, Optional

from homeio_agent.settings import env

ACTION_LOGGER = "homeio_agent.actions"


class DailyGzipRotatingFileHandler(Handler):
    """
    Writes <basename>.log and rolls it into <basename>.YYYY-MM-DD.i.log.gz
    when the day changes or the file grows past max_bytes.
    """

    def __init__(
        self,
        log_dir: str,
        basename: str = "agent",
        max_bytes: int = 50 * 1024 * 1024,
        max_history_days: int = 14,
        total_size_cap_bytes: int = 1024 * 1024 * 1024,
        encoding: str = "utf-8",
    ):
        super().__init__()
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.basename = basename
        self.active_path = self.log_dir / f"{basename}.log"
        self.max_bytes = max(1, int(max_bytes))
        self.max_history_days = max(1, int(max_history_days))
        self.total_size_cap_bytes = max(0, int(total_size_cap_bytes))
        self.encoding = encoding

        self._stream = open(self.active_path, "a", encoding=self.encoding, buffering=1)
        self._day = datetime.now().strftime("%Y-%m-%d")
        self._prune()

    def emit(self, record: LogRecord) -> None:
        try:
            msg = self.format(record)
            today = datetime.now().strftime("%Y-%m-%d")
            if today != self._day or self._active_size() >= self.max_bytes:
                self._rollover(self._day)
                self._day = today
            self._stream.write(msg + "\n")
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self.acquire()
        try:
            if self._stream is not None:
                self._stream.close()
                self._stream = None
        finally:
            self.release()
        super().close()

    def _active_size(self) -> int:
        try:
            return self.active_path.stat().st_size
        except OSError:
            return 0

    def _archives(self):
        return self.log_dir.glob(f"{self.basename}.*.*.log.gz")

    def _rollover(self, day: str) -> None:
        self._stream.close()
        if self._active_size() > 0:
            index = 1 + max(
                (int(p.name.split(".")[2]) for p in self.log_dir.glob(f"{self.basename}.{day}.*.log.gz")
                 if p.name.split(".")[2].isdigit()),
                default=-1,
            )
            plain = self.log_dir / f"{self.basename}.{day}.{index}.log"
            try:
                os.replace(self.active_path, plain)
                with open(plain, "rb") as f_in, gzip.open(f"{plain}.gz", "wb") as f_out:
                    shutil.copyfileobj(f_in, f_out)
                plain.unlink(missing_ok=True)
            except OSError:
                pass
        self._stream = open(self.active_path, "a", encoding=self.encoding, buffering=1)
        self._prune()

    def _prune(self) -> None:
        cutoff = datetime.now() - timedelta(days=self.max_history_days)
        kept = []
        for p in self._archives():
            try:
                day = datetime.strptime(p.name.split(".")[1], "%Y-%m-%d")
                st = p.stat()
            except (ValueError, OSError):
                continue
            if day < cutoff:
                p.unlink(missing_ok=True)
                continue
            kept.append((st.st_mtime, p, st.st_size))

        if self.total_size_cap_bytes <= 0:
            return
        total = sum(size for _, _, size in kept)
        for _, p, size in sorted(kept, key=lambda x: x[0]):
            if total <= self.total_size_cap_bytes:
                break
            p.unlink(missing_ok=True)
            total -= size


def setup_logging(service_name: str = "homeio-agent") -> None:
    """
    File + console logging: agent.log for everything, actions.log for the
    deploy action log.
    - default directory: ./logs/<service_name>
    - override with HOMEIO_LOG_DIR
    """
    log_dir = env("HOMEIO_LOG_DIR", os.path.join(os.getcwd(), "logs", service_name))
    Path(log_dir).mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(env("HOMEIO_LOG_LEVEL", "INFO").upper())
    if getattr(root, "_homeio_logging_configured", False):
        return

    limits = {
        "max_bytes": int(env("HOMEIO_LOG_MAX_FILE_SIZE_BYTES", str(50 * 1024 * 1024))),
        "max_history_days": int(env("HOMEIO_LOG_MAX_HISTORY_DAYS", "14")),
        "total_size_cap_bytes": int(env("HOMEIO_LOG_TOTAL_SIZE_CAP_BYTES", str(1024 * 1024 * 1024))),
    }
    datefmt = "%Y-%m-%d %H:%M:%S"
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s", datefmt=datefmt)

    agent_file = DailyGzipRotatingFileHandler(log_dir, basename="agent", **limits)
    agent_file.setFormatter(fmt)
    console = logging.StreamHandler()
    console.setFormatter(fmt)
    root.addHandler(agent_file)
    root.addHandler(console)

    # deploy history also lands in its own file (still propagates to agent.log)
    actions_file = DailyGzipRotatingFileHandler(log_dir, basename="actions", **limits)
    actions_file.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s", datefmt=datefmt))
    logging.getLogger(ACTION_LOGGER).addHandler(actions_file)

    setattr(root, "_homeio_logging_configured", True)
    logging.getLogger(__name__).info("logging configured: dir=%s", log_dir)


def log_action(event: str, meta: Optional[Dict[str, Any]] = None, level: str = "info") -> None:
    """
    Action log for deploy/lifecycle events. Fire-and-forget: never raises.
    """
    try:
        payload = json.dumps(meta or {}, default=str, ensure_ascii=False)
        lvl = logging.getLevelName(level.upper())
        if not isinstance(lvl, int):
            lvl = logging.INFO
        logging.getLogger(ACTION_LOGGER).log(lvl, "%s %s", event, payload)
    except Exception:
        pass
