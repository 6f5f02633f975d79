# Author: ud3v0id
import argparse
import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import colorama
import requests
import serial.tools.list_ports

STEP = 22
SUCCESS = 25
logging.addLevelName(STEP, "STEP")
logging.addLevelName(SUCCESS, "SUCCESS")

LEVEL_COLORS = {
    logging.DEBUG: colorama.Style.DIM,
    STEP: colorama.Fore.CYAN,
    logging.INFO: colorama.Fore.BLUE,
    SUCCESS: colorama.Fore.GREEN,
    logging.WARNING: colorama.Fore.YELLOW,
    logging.ERROR: colorama.Fore.RED,
}


class ColorFormatter(logging.Formatter):
    """Paints the [LEVEL] tag of each record."""
    def __init__(self, fmt=None, datefmt=None, use_color: bool = True):
        super().__init__(fmt, datefmt)
        self.use_color = use_color

    def format(self, record):
        msg = super().format(record)
        color = LEVEL_COLORS.get(record.levelno)
        if self.use_color and color:
            tag = f"[{record.levelname}]"
            msg = msg.replace(tag, f"{color}{tag}{colorama.Style.RESET_ALL}", 1)
        return msg


def _isatty(stream) -> bool:
    return stream is not None and hasattr(stream, "isatty") and stream.isatty()


# Colour only when attached to a terminal; --no-color forces it off
_formatter = ColorFormatter('[%(asctime)s] [%(levelname)s] : %(message)s', datefmt='%H:%M:%S',
                            use_color=_isatty(sys.stderr))
_paint_color = _isatty(sys.stdout)
_handler = logging.StreamHandler()
_handler.setFormatter(_formatter)
logging.basicConfig(level=logging.INFO, handlers=[_handler])
logger = logging.getLogger("r1reset")

MTKCLIENT_HOME = "https://github.com/bkerler/mtkclient"
MTKCLIENT_REPO = MTKCLIENT_HOME + ".git"
CONNECTIVITY_URL = "https://github.com"
HOMEBREW_INSTALL_URL = "https://raw.githubusercontent.com/Homebrew/install/HEAD/install.sh"
LIVE_DVD_URL = "https://androidfilehost.com/?fid=15664248565197184488"
MTK_VID = 0x0E8D

OS_RELEASE = Path("/etc/os-release")
REDHAT_RELEASE = Path("/etc/redhat-release")
LIVE_DVD_DIR = Path("/opt/mtkclient")
LIVE_DVD_MTK = LIVE_DVD_DIR / "mtk"
UDEV_RULES_DIR = "/etc/udev/rules.d/"
BLACKLIST_CONF = "/etc/modprobe.d/blacklist.conf"

# Fixed erase command handed to the MTK tool.
ERASE_ARGS = ["e", "userdata"]

# --- OS package presets ---
PACKAGE_PRESETS = {
    "apt": {
        "ids": ("ubuntu", "debian"),
        "desc": "Ubuntu/Debian",
        "commands": [
            ["sudo", "apt", "update"],
            ["sudo", "apt", "install", "-y", "python3", "python3-pip", "python3-venv", "git",
             "libusb-1.0-0", "libfuse2", "curl", "wget", "build-essential"],
        ],
    },
    "pacman": {
        "ids": ("arch", "manjaro"),
        "desc": "Arch Linux",
        "commands": [
            ["sudo", "pacman", "-S", "--noconfirm", "python", "python-pip", "python-pipenv", "git",
             "libusb", "fuse2", "curl", "wget", "base-devel"],
        ],
    },
    "dnf": {
        "ids": ("fedora", "rhel", "centos"),
        "desc": "Fedora/RHEL",
        "commands": [
            ["sudo", "dnf", "install", "-y", "python3", "python3-pip", "git", "libusb1", "fuse",
             "curl", "wget", "gcc", "gcc-c++", "make"],
        ],
    },
    "brew": {
        "ids": ("macos",),
        "desc": "macOS",
        "commands": [
            ["brew", "install", "macfuse", "openssl", "python@3.9", "git"],
        ],
    },
}

# udev rules and group membership only make sense on these hosts
PERMISSION_OSES = ("ubuntu", "debian", "arch", "fedora")

WINDOWS_PREREQS = [
    "Python 3.9+ from python.org (NOT Microsoft Store)",
    "Git for Windows",
    "Visual Studio Build Tools (C++ workload)",
    "WinFsp from https://winfsp.dev/rel/",
    "UsbDk from https://github.com/daynix/UsbDk/releases/",
]
MANUAL_PREREQS = ["Python 3.8+", "pip", "git", "libusb", "fuse"]


class SetupError(RuntimeError):
    """Raised when the host cannot be prepared for the reset."""


def set_color(enabled: bool):
    global _paint_color
    _formatter.use_color = enabled
    _paint_color = enabled


def _paint(color: str, *lines: str):
    prefix, suffix = (color, colorama.Style.RESET_ALL) if _paint_color else ("", "")
    for line in lines:
        print(f"{prefix}{line}{suffix}")


def _step(msg: str):
    logger.log(STEP, msg)


def _success(msg: str):
    logger.log(SUCCESS, msg)


def _host_platform() -> str:
    return sys.platform


def _current_user() -> str:
    return os.environ.get("USER", "")


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


def run(cmd: Sequence, cwd=None, check: bool = True, quiet: bool = False,
        input: Optional[str] = None) -> subprocess.CompletedProcess:
    """Run an external command without a shell; raises CalledProcessError when check is set."""
    argv = [str(c) for c in cmd]
    logger.debug(f"$ {' '.join(argv)}" + (f"  (cwd={cwd})" if cwd else ""))
    kwargs = {}
    if quiet:
        kwargs.update(stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    if input is not None:
        kwargs.update(input=input, text=True)
    return subprocess.run(argv, cwd=cwd, check=check, **kwargs)


def _try_run(cmd: Sequence, **kwargs) -> bool:
    """Best-effort variant of run(): failures are logged at debug level only."""
    try:
        run(cmd, quiet=True, **kwargs)
        return True
    except (subprocess.CalledProcessError, OSError) as e:
        logger.debug(f"Ignored failure: {e}")
        return False


def find_mtk_port() -> Optional[str]:
    """Pick first serial port matching the MediaTek VID."""
    for p in serial.tools.list_ports.comports():
        if p.vid == MTK_VID:
            return p.device
    return None


def _read_os_release(path: Path) -> Dict[str, str]:
    fields = {}
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        fields[key.strip()] = value
    return fields


def _venv_python(venv_dir: Path) -> Path:
    if os.name == "nt":
        return venv_dir / "Scripts" / "python.exe"
    return venv_dir / "bin" / "python"


def _venv_activate_hint(venv_dir: Path) -> str:
    if os.name == "nt":
        return str(venv_dir / "Scripts" / "activate")
    return f"source {venv_dir / 'bin' / 'activate'}"


def show_banner():
    _paint(colorama.Fore.BLUE,
           "========================================================",
           "    Rabbit R1 Auto-Setup Factory Reset Tool v2.0",
           "         Automatic MTKClient Installation",
           "========================================================")


def handle_error():
    """Print static troubleshooting hints after a failed run."""
    logger.error("An error occurred during the process")
    print()
    _paint(colorama.Fore.YELLOW, "Troubleshooting:")
    print()
    _paint(colorama.Fore.CYAN, "Setup Issues:")
    print("• Run with sudo if permission errors occur")
    print("• Ensure internet connection for downloads")
    print("• Check if Python 3.8+ is properly installed")
    print()
    _paint(colorama.Fore.CYAN, "Device Issues:")
    print("• Ensure device drivers are properly installed")
    print("• Try a different USB cable or port")
    print("• Make sure the R1 is completely powered off before connecting")
    print("• On Linux, logout and login after first run (for group permissions)")
    print()
    _paint(colorama.Fore.CYAN, "Windows Specific:")
    print("• Install UsbDk drivers from: https://github.com/daynix/UsbDk/releases/")
    print("• Install Visual Studio Build Tools with C++ workload")
    print("• Use Python from python.org, NOT Microsoft Store")
    print()
    print(f"For more help, visit: {MTKCLIENT_HOME}")
    print(f"Or use the MTK Live DVD: {LIVE_DVD_URL}")


class ResetSession:
    """Paths, detected host and resolved MTK command for one reset run."""
    def __init__(self, base_dir=None, assume_yes: bool = False, skip_deps: bool = False):
        self.base_dir = Path(base_dir or Path.cwd()).expanduser().resolve()
        self.mtkclient_dir = self.base_dir / "mtkclient"
        self.venv_dir = self.base_dir / "mtk_venv"
        self.os_id = "unknown"
        self.os_version: Optional[str] = None
        self.is_live_dvd = False
        self.mtk_cmd: List[str] = []
        self.assume_yes = assume_yes
        self.skip_deps = skip_deps

    def _pause(self, prompt: str):
        if not self.assume_yes:
            input(prompt)

    def _tool_cwd(self) -> Optional[Path]:
        for d in (self.mtkclient_dir, self.base_dir):
            if d.is_dir():
                return d
        return None

    # --- Host detection ---
    def detect_system(self):
        platform = _host_platform()
        if OS_RELEASE.is_file():
            fields = _read_os_release(OS_RELEASE)
            self.os_id = fields.get("ID", "unknown") or "unknown"
            self.os_version = fields.get("VERSION_ID")
        elif REDHAT_RELEASE.is_file():
            self.os_id = "rhel"
        elif platform == "darwin":
            self.os_id = "macos"
        elif platform in ("win32", "cygwin", "msys"):
            self.os_id = "windows"
        else:
            self.os_id = "unknown"

        if _current_user() == "user" and LIVE_DVD_DIR.is_dir():
            self.is_live_dvd = True
            _success("MTK Live DVD environment detected")

        logger.info(f"Detected OS: {self.os_id}")

    def show_warnings(self) -> bool:
        """Describe what is about to happen; returns True when the user agrees to continue."""
        _paint(colorama.Fore.RED,
               "⚠️  WARNING: AUTOMATIC SETUP & FACTORY RESET ⚠️",
               "========================================================",
               "This script will:",
               "• Automatically install MTKClient and dependencies",
               "• Set up required permissions and drivers",
               "• Erase ALL user data on your Rabbit R1",
               "• Reset the device to factory settings",
               "• Bypass lost mode if activated",
               "• Cannot be undone once started",
               "========================================================")
        print()
        _paint(colorama.Fore.YELLOW, "What will be installed:")
        if not self.is_live_dvd:
            print("• System dependencies (Python, Git, USB libraries)")
            print("• MTKClient from GitHub")
            print("• Python virtual environment")
            print("• USB device rules and permissions")
        else:
            print("• Nothing - Live DVD environment detected")
        print()
        _paint(colorama.Fore.YELLOW, "Prerequisites:")
        print("• Internet connection for downloads")
        print("• Administrator/sudo access (except Live DVD)")
        print("• Rabbit R1 device with USB cable")
        print()

        if self.assume_yes:
            return True
        reply = input("Do you want to continue with automatic setup? (y/N): ")
        return reply.strip()[:1] in ("y", "Y")

    def check_internet(self):
        _step("Checking internet connectivity...")
        try:
            requests.get(CONNECTIVITY_URL, timeout=5)
        except requests.RequestException as e:
            logger.debug(f"Connectivity probe failed: {e}")
            logger.error("No internet connection detected")
            raise SetupError("Internet is required for automatic setup") from e
        _success("Internet connection verified")

    # --- Setup ---
    def install_system_deps(self):
        _step("Installing system dependencies...")

        for preset in PACKAGE_PRESETS.values():
            if self.os_id in preset["ids"]:
                logger.info(f"Installing dependencies for {preset['desc']}...")
                if self.os_id == "macos" and not command_exists("brew"):
                    self._install_homebrew()
                for cmd in preset["commands"]:
                    run(cmd)
                return

        if self.os_id == "windows":
            logger.warning("Windows detected. Please ensure the following are installed:")
            for item in WINDOWS_PREREQS:
                print(f"  - {item}")
            self._pause("Press Enter once all prerequisites are installed...")
            return

        logger.error(f"Unsupported operating system: {self.os_id}")
        logger.error("Please install dependencies manually:")
        for item in MANUAL_PREREQS:
            print(f"  - {item}")
        raise SetupError(f"Unsupported operating system: {self.os_id}")

    def _install_homebrew(self):
        logger.info("Installing Homebrew...")
        resp = requests.get(HOMEBREW_INSTALL_URL, timeout=30)
        resp.raise_for_status()
        run(["/bin/bash", "-c", resp.text])

    def clone_mtkclient(self):
        _step("Downloading MTKClient...")
        if self.mtkclient_dir.is_dir():
            logger.info("MTKClient directory exists, updating...")
            try:
                run(["git", "pull", "origin", "main"], cwd=self.mtkclient_dir)
            except subprocess.CalledProcessError:
                # older checkouts still track master
                run(["git", "pull", "origin", "master"], cwd=self.mtkclient_dir)
        else:
            logger.info("Cloning MTKClient repository...")
            run(["git", "clone", MTKCLIENT_REPO, self.mtkclient_dir])

    def setup_venv(self):
        _step("Setting up Python virtual environment...")
        if not self.venv_dir.is_dir():
            run([sys.executable, "-m", "venv", self.venv_dir])
        python = _venv_python(self.venv_dir)
        run([python, "-m", "pip", "install", "--upgrade", "pip"])
        run([python, "-m", "pip", "install", "-r", "requirements.txt"], cwd=self.mtkclient_dir)
        run([python, "-m", "pip", "install", "."], cwd=self.mtkclient_dir)
        self.mtk_cmd = [str(python), "-m", "mtkclient.mtk"]

    def setup_mtkclient_direct(self):
        """User-level install for hosts where a venv is not used (root on Linux)."""
        _step("Setting up MTKClient...")
        for pip, python in (("pip3", "python3"), ("pip", "python")):
            if command_exists(pip):
                run([pip, "install", "--user", "-r", "requirements.txt"], cwd=self.mtkclient_dir)
                run([pip, "install", "--user", "."], cwd=self.mtkclient_dir)
                self.mtk_cmd = [python, "-m", "mtkclient.mtk"]
                return
        # No pip at all: run the checkout directly
        self.mtk_cmd = ["python3", "mtk.py"]

    def setup_permissions(self):
        if self.os_id not in PERMISSION_OSES:
            return
        _step("Setting up user permissions...")

        user = _current_user()
        for group in ("plugdev", "dialout"):
            _try_run(["sudo", "usermod", "-a", "-G", group, user])

        rules_dir = self.mtkclient_dir / "mtkclient" / "Setup" / "Linux"
        if (rules_dir / "51-edl.rules").is_file():
            logger.info("Installing udev rules...")
            _try_run(["sudo", "cp", *sorted(rules_dir.glob("*.rules")), UDEV_RULES_DIR])
            _try_run(["sudo", "udevadm", "control", "-R"])
            _try_run(["sudo", "udevadm", "trigger"])

        if find_mtk_port():
            _try_run(["sudo", "tee", "-a", BLACKLIST_CONF], input="blacklist qcaux\n")

        logger.warning("You may need to log out and log back in for group changes to take effect")

    def verify_mtkclient(self) -> bool:
        _step("Verifying MTKClient installation...")
        candidates = []
        if self.mtk_cmd:
            candidates.append(list(self.mtk_cmd))
        candidates += [
            ["python3", str(self.mtkclient_dir / "mtk.py")],
            [str(self.mtkclient_dir / "mtk.py")],
            [str(LIVE_DVD_MTK)],
        ]
        for cmd in candidates:
            if _try_run([*cmd, "--help"], cwd=self._tool_cwd()):
                self.mtk_cmd = cmd
                _success(f"MTKClient is working: {' '.join(cmd)}")
                return True
        logger.error("MTKClient installation verification failed")
        return False

    def auto_setup(self):
        _step("Starting automatic setup...")
        if self.is_live_dvd:
            _success("Running on MTK Live DVD - setup not needed")
            self.mtk_cmd = [str(LIVE_DVD_MTK)]
            return

        self.base_dir.mkdir(parents=True, exist_ok=True)
        if self.skip_deps:
            logger.info("Skipping system dependency installation")
        else:
            self.install_system_deps()
        self.clone_mtkclient()

        if self.os_id == "macos" or _current_user() != "root":
            self.setup_venv()
        else:
            self.setup_mtkclient_direct()

        self.setup_permissions()

        if not self.verify_mtkclient():
            raise SetupError("Setup failed - MTKClient not working properly")
        _success("Automatic setup completed successfully!")

    # --- Reset ---
    def prepare_device(self):
        _step("Preparing for device connection...")
        print()
        _paint(colorama.Fore.YELLOW, "Device Connection Instructions:")
        print("1. Ensure your Rabbit R1 is completely powered off")
        print("2. Connect the USB cable between R1 and computer")
        print("3. When prompted, the script will wait for device connection")
        print("4. After connection is detected, plug in your R1")
        print()
        port = find_mtk_port()
        if port:
            logger.info(f"MediaTek device already visible on {port}")
        self._pause("Press Enter when ready to proceed...")

    def perform_reset(self) -> bool:
        _step("Starting factory reset process...")
        logger.info("Waiting for device connection...")
        _paint(colorama.Fore.YELLOW,
               "🔌 PLUG IN YOUR RABBIT R1 NOW!",
               "   The device should be detected automatically",
               "   You'll see dots appearing as the tool waits...")

        cmd = [*self.mtk_cmd, *ERASE_ARGS]
        logger.info(f"Executing: {' '.join(cmd)}")
        result = run(cmd, cwd=self._tool_cwd(), check=False)
        if result.returncode == 0:
            _success("Userdata partition erased successfully!")
            return True
        logger.error("Failed to erase userdata partition")
        return False

    def post_reset_instructions(self):
        print()
        _paint(colorama.Fore.GREEN, "✅ Factory Reset Complete!", "==========================")
        _paint(colorama.Fore.YELLOW, "Next Steps:")
        print("1. Unplug the USB cable from your Rabbit R1")
        print("2. Hold the power button to turn on the device")
        print("3. The R1 should boot to initial setup screen")
        print("4. Follow on-screen instructions to set up your device")
        print()
        _success("Your Rabbit R1 has been successfully factory reset!")
        logger.info("Lost mode has been bypassed and all user data cleared")

        if not self.is_live_dvd:
            print()
            _paint(colorama.Fore.CYAN, "Setup Information:")
            print(f"• MTKClient installed in: {self.mtkclient_dir}")
            if self.venv_dir.is_dir():
                print(f"• Python environment: {self.venv_dir}")
                print(f"• To use MTKClient again: {_venv_activate_hint(self.venv_dir)}")
            print("• You can run this script again anytime")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="r1reset",
        description="Rabbit R1 factory reset - installs MTKClient and erases the userdata partition",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("--base-dir", help="Install mtkclient and its venv here (default: current directory)")
    parser.add_argument("--skip-deps", action="store_true", help="Do not install OS packages")
    parser.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation or wait for Enter")
    parser.add_argument("--no-color", action="store_true", help="Disable coloured output")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose logging (echo every command)")
    args = parser.parse_args(argv)

    # Elevate log level when debug flag is provided so command echoes are visible
    if args.debug:
        logger.setLevel(logging.DEBUG)
    if args.no_color:
        set_color(False)
    colorama.just_fix_windows_console()

    session = ResetSession(args.base_dir, assume_yes=args.yes, skip_deps=args.skip_deps)
    try:
        show_banner()
        session.detect_system()
        if not session.show_warnings():
            logger.info("Operation cancelled by user")
            return 0
        if not session.is_live_dvd:
            session.check_internet()
        session.auto_setup()
        session.prepare_device()
        if not session.perform_reset():
            handle_error()
            return 1
        session.post_reset_instructions()
        return 0
    except (KeyboardInterrupt, EOFError):
        print()
        _paint(colorama.Fore.RED, "Script interrupted by user")
        return 130
    except (SetupError, subprocess.CalledProcessError, requests.RequestException, OSError) as e:
        logger.error(f"Error: {e}")
        handle_error()
        return 1


if __name__ == "__main__":
    sys.exit(main())
