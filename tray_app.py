#!/usr/bin/env python3
"""
WorkSmart - System Tray Application
===================================

Persistent system tray icon that:
- Runs a WorkSmart cycle every few minutes (options.refresh_minutes)
- Shows weekly hours and pending approvals in the tooltip
- Changes icon color to show status (green/orange/red)
- Fires deadline reminders queued by worksmart.py when they come due

Cross-platform: Windows + macOS

Usage:
    pythonw.exe tray_app.py              # Windows: run without console
    python3 tray_app.py                  # Mac: run the tray app
    python tray_app.py --stop            # Stop a running instance
"""

import sys
import argparse
import threading
import subprocess
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

# Platform-specific imports
if sys.platform == 'win32':
    import ctypes

# Conditional imports -- tray app degrades gracefully if missing
try:
    import pystray
    from PIL import Image, ImageDraw, ImageFont
    PYSTRAY_OK = True
except Exception:
    # ImportError, or an X display error on headless Linux
    PYSTRAY_OK = False

import worksmart
from worksmart import (
    CycleResult,
    Urgency,
    WorkSmartAutomation,
    format_time_remaining,
    urgency_level,
)

SCRIPT_DIR = Path(__file__).parent
STOP_FILE = SCRIPT_DIR / '_tray_stop.signal'
DEFAULT_REFRESH_MINUTES = 15
REMINDER_TICK_SECONDS = 60

if sys.platform == 'win32':
    MUTEX_NAME = 'WorkSmartTray_SingleInstance_Mutex'

# Tray app logger (separate from the worksmart logger)
tray_logger = logging.getLogger('tray_app')


def _setup_tray_logging():
    tray_logger.setLevel(logging.INFO)
    if tray_logger.handlers:
        return
    handler = logging.FileHandler(worksmart.LOG_FILE, encoding='utf-8')
    handler.setFormatter(
        logging.Formatter('%(asctime)s - TRAY - %(levelname)s - %(message)s')
    )
    tray_logger.addHandler(handler)


# Status background colors
BG_COLORS = {
    'green': (186, 230, 126),
    'orange': (252, 211, 119),
    'red': (252, 165, 165),
}

# ============================================================================
# STATUS
# ============================================================================

def status_color(result: Optional[CycleResult],
                 now: Optional[datetime] = None) -> str:
    """Icon colour for the outcome of the last cycle."""
    if result is None or result.summary is None:
        return 'red'
    urgency = urgency_level(now, result.summary.deadline)
    has_pending = result.is_manager and bool(result.items)
    if has_pending and urgency in (Urgency.CRITICAL, Urgency.EXPIRED):
        return 'red'
    if result.stale:
        return 'orange'
    if result.is_manager and not result.approvals_available:
        return 'orange'
    if has_pending and urgency in (Urgency.LOW, Urgency.HIGH):
        return 'orange'
    return 'green'


def tooltip_text(result: Optional[CycleResult]) -> str:
    """Short tooltip; some platforms cap it at 64 characters."""
    if result is None:
        return 'WorkSmart - Loading...'
    if result.summary is None:
        return f"WorkSmart - {result.error or 'No data'}"[:64]
    s = result.summary
    parts = [f"{s.total_hours:.1f}h"]
    if s.rate_known:
        parts.append(f"${s.weekly_earnings:,.0f}")
    if result.is_manager:
        if result.approvals_available or result.items:
            parts.append(f"{len(result.items)} pending")
        elif result.stale and result.cached_item_count:
            parts.append(f"{result.cached_item_count} pending (cached)")
        else:
            parts.append('? pending')
    if result.stale:
        parts.append('cached')
    else:
        parts.append(f"{format_time_remaining(s.time_remaining)} left")
    return f"WorkSmart - {' | '.join(parts)}"[:64]


# ============================================================================
# ICON GENERATION
# ============================================================================

CORNER_RADIUS = 12  # rounded corner radius for the background square


def _make_icon(color: str = 'green') -> 'Image':
    """Generate 64x64 tray icon: rounded-rect background + 'W'."""
    size = 64
    rgb = BG_COLORS.get(color, BG_COLORS['green'])
    img = Image.new('RGBA', (size, size), (0, 0, 0, 0))
    draw = ImageDraw.Draw(img)
    draw.rounded_rectangle(
        [0, 0, size - 1, size - 1],
        radius=CORNER_RADIUS,
        fill=rgb,
    )
    try:
        font = ImageFont.truetype("arial.ttf", 40)
    except (OSError, IOError):
        font = ImageFont.load_default()
    bbox = draw.textbbox((0, 0), "W", font=font)
    tw, th = bbox[2] - bbox[0], bbox[3] - bbox[1]
    draw.text(((size - tw) // 2, (size - th) // 2),
              "W", fill=(0, 70, 150), font=font)
    return img


# ============================================================================
# TRAY APPLICATION
# ============================================================================

class TrayApp:
    """System tray host for WorkSmart cycles and reminders."""

    def __init__(self, automation: Optional[WorkSmartAutomation] = None):
        self._cycle_lock = threading.Lock()
        self._stopping = threading.Event()
        self._refresh_timer = None
        self._reminder_timer = None
        self._icon = None
        self._automation = automation or WorkSmartAutomation(
            worksmart.CONFIG_FILE
        )
        self.last_result: Optional[CycleResult] = None

    def _refresh_minutes(self) -> int:
        options = self._automation.config_manager.options()
        try:
            minutes = int(options.get('refresh_minutes',
                                      DEFAULT_REFRESH_MINUTES))
        except (TypeError, ValueError):
            minutes = DEFAULT_REFRESH_MINUTES
        return max(1, minutes)

    def _check_single_instance(self) -> bool:
        """
        Ensure only one tray app instance is running.
        Windows: named Win32 mutex.
        Mac/Linux: fcntl file lock.
        """
        if sys.platform == 'win32':
            self._mutex = ctypes.windll.kernel32.CreateMutexW(
                None, True, MUTEX_NAME
            )
            if ctypes.windll.kernel32.GetLastError() == 183:
                tray_logger.info("Another instance is already running")
                return False
            return True
        import fcntl
        # Keep file handle alive for process lifetime
        self._lock_file = open(SCRIPT_DIR / '.tray_app.lock', 'w')
        try:
            fcntl.flock(self._lock_file.fileno(),
                        fcntl.LOCK_EX | fcntl.LOCK_NB)
            return True
        except IOError:
            tray_logger.info("Another instance is already running")
            return False

    # --- Timers ---

    def _schedule_next_refresh(self):
        if self._refresh_timer:
            self._refresh_timer.cancel()
        if self._stopping.is_set():
            return
        minutes = self._refresh_minutes()
        self._refresh_timer = threading.Timer(minutes * 60,
                                              self._on_refresh_timer)
        self._refresh_timer.daemon = True
        self._refresh_timer.start()
        next_run = datetime.now() + timedelta(minutes=minutes)
        tray_logger.info(f"Next refresh scheduled for {next_run:%H:%M}")

    def _on_refresh_timer(self):
        self._run_cycle()
        self._schedule_next_refresh()

    def _schedule_reminder_tick(self):
        if self._stopping.is_set():
            return
        self._reminder_timer = threading.Timer(REMINDER_TICK_SECONDS,
                                               self._on_reminder_tick)
        self._reminder_timer.daemon = True
        self._reminder_timer.start()

    def _on_reminder_tick(self):
        try:
            delivered = self._automation.notifier.deliver_due()
            if delivered:
                tray_logger.info(f"Delivered {delivered} reminder(s)")
        except Exception as e:
            tray_logger.error(f"Reminder delivery failed: {e}", exc_info=True)
        if STOP_FILE.exists():
            self._handle_stop_signal()
            return
        self._schedule_reminder_tick()

    # --- Cycle ---

    def _run_cycle(self):
        """Run one WorkSmart cycle unless one is already in progress."""
        if not self._cycle_lock.acquire(blocking=False):
            tray_logger.info("Cycle already running, skipping")
            return
        try:
            result = self._automation.run_cycle()
            self.last_result = result
            self._set_icon_state(status_color(result), tooltip_text(result))
            if result.auth_failed:
                worksmart.show_desktop_notification(
                    'WorkSmart Login Failed',
                    'Stored credentials were rejected. '
                    'Right-click the tray icon > Setup.'
                )
            tray_logger.info(f"Cycle finished: {tooltip_text(result)}")
        except Exception as e:
            tray_logger.error(f"Cycle failed: {e}", exc_info=True)
            self._set_icon_state('red', f'WorkSmart - Error: {str(e)[:40]}')
        finally:
            self._cycle_lock.release()

    # --- Menu ---

    def _build_menu(self) -> 'pystray.Menu':
        return pystray.Menu(
            pystray.MenuItem(
                'Refresh Now',
                self._on_refresh_now,
                default=True  # activates on double-click
            ),
            pystray.MenuItem(
                'Approve All Pending',
                self._on_approve_all,
                visible=self._approve_visible,
            ),
            pystray.Menu.SEPARATOR,
            pystray.MenuItem('View Log', self._on_view_log),
            pystray.MenuItem('Setup', self._on_setup),
            pystray.Menu.SEPARATOR,
            pystray.MenuItem('Exit', self._on_exit),
        )

    def _approve_visible(self, item) -> bool:
        result = self.last_result
        return bool(result and result.is_manager and result.items)

    def _on_refresh_now(self, icon=None, item=None):
        threading.Thread(target=self._run_cycle, daemon=True).start()

    def _on_approve_all(self, icon=None, item=None):
        self._open_in_terminal('--approve-all')

    def _on_setup(self, icon=None, item=None):
        self._open_in_terminal('--setup')

    def _on_view_log(self, icon=None, item=None):
        """Open the log file in the default text editor."""
        log_path = str(worksmart.LOG_FILE)
        if not worksmart.LOG_FILE.exists():
            worksmart.show_desktop_notification('No Log',
                                                'Log file not found yet.')
            return
        if sys.platform == 'win32':
            subprocess.Popen(['notepad.exe', log_path])
        else:
            subprocess.Popen(['open', log_path])

    def _open_in_terminal(self, cli_arg: str):
        """
        Open worksmart.py with a CLI argument in a new terminal.
        Windows: cmd /k with CREATE_NEW_CONSOLE.
        Mac: osascript to open Terminal.app with command.
        """
        script = SCRIPT_DIR / 'worksmart.py'
        if sys.platform == 'win32':
            python_exe = Path(sys.executable).parent / "python.exe"
            subprocess.Popen(
                ['cmd', '/k', str(python_exe), str(script), cli_arg],
                cwd=str(SCRIPT_DIR),
                creationflags=subprocess.CREATE_NEW_CONSOLE
            )
        elif sys.platform == 'darwin':
            cmd = f'cd "{SCRIPT_DIR}" && python3 "{script}" {cli_arg}'
            subprocess.Popen([
                'osascript', '-e',
                f'tell app "Terminal" to do script "{cmd}"'
            ])
        else:
            subprocess.Popen(
                ['x-terminal-emulator', '-e',
                 'python3', str(script), cli_arg],
                cwd=str(SCRIPT_DIR)
            )

    def _on_exit(self, icon=None, item=None):
        self._shutdown()

    def _handle_stop_signal(self):
        tray_logger.info("Stop signal received, shutting down")
        try:
            STOP_FILE.unlink()
        except OSError:
            pass
        self._shutdown()

    def _shutdown(self):
        self._stopping.set()
        for timer in (self._refresh_timer, self._reminder_timer):
            if timer:
                timer.cancel()
        if self._icon:
            self._icon.stop()
        tray_logger.info("Tray app stopped")

    def _set_icon_state(self, color: str, tooltip: str):
        """Thread-safe icon and tooltip update."""
        if self._icon:
            try:
                self._icon.icon = _make_icon(color)
                self._icon.title = tooltip
            except Exception as e:
                tray_logger.error(f"Failed to update icon: {e}")

    def run(self):
        """Main entry point -- blocks on pystray message pump."""
        if not PYSTRAY_OK:
            print(
                "ERROR: pystray and Pillow are required.\n"
                "Install with: pip install pystray Pillow"
            )
            sys.exit(1)

        if STOP_FILE.exists():
            STOP_FILE.unlink()

        if not self._check_single_instance():
            print("Another instance of WorkSmart Tray is already running.")
            sys.exit(0)

        self._icon = pystray.Icon(
            name='WorkSmart',
            icon=_make_icon('orange'),
            title=tooltip_text(None),
            menu=self._build_menu()
        )

        def _first_cycle():
            self._run_cycle()
            self._schedule_next_refresh()

        threading.Thread(target=_first_cycle, daemon=True).start()
        self._schedule_reminder_tick()
        tray_logger.info("Tray app started")
        self._icon.run()  # Blocks (Win32 message pump)


def stop_app():
    """Signal a running tray app instance to shut down via stop file."""
    STOP_FILE.write_text('stop')
    print("[OK] Stop signal sent to running tray app")
    print(f"[INFO] It exits within {REMINDER_TICK_SECONDS}s")
    tray_logger.info("Stop signal file created")


# ============================================================================
# ENTRY POINT
# ============================================================================

def main():
    """Entry point with argument parsing."""
    parser = argparse.ArgumentParser(
        description='WorkSmart - System Tray App'
    )
    parser.add_argument(
        '--stop', action='store_true',
        help='Stop a running tray app instance'
    )
    args = parser.parse_args()

    _setup_tray_logging()
    worksmart._force_utf8_output()
    options = worksmart.ConfigManager(worksmart.CONFIG_FILE).options()
    worksmart.setup_logging(debug=options.get('debug_mode', False))

    if args.stop:
        stop_app()
    else:
        TrayApp().run()


if __name__ == '__main__':
    main()
