import os
import sys
import re
import json
import errno
import signal
import socket
import argparse
import ipaddress
import math
import threading
import time
import logging
from collections import deque
from datetime import datetime
from urllib.parse import quote

import psutil  # Requires: pip install psutil
import qrcode  # Requires: pip install qrcode

# Server Imports
from flask import Flask, request, send_from_directory, render_template_string, redirect, abort
from werkzeug.serving import make_server
from werkzeug.wsgi import ClosingIterator

# ==========================================
# 1. 설정 및 상수 (Constants)
# ==========================================
CONFIG_FILE = "webshare_config.json"
DEFAULT_PORT = 3000
DEFAULT_HOST = "0.0.0.0"
DEFAULT_DIRECTORY = "."
DEFAULT_QR_PREFIX = "192"
SHUTDOWN_GRACE_SECONDS = 5  # 종료 시 진행 중인 요청을 기다리는 최대 시간 (초)
MAX_LOG_LINES = 1000

# 예약 주소 대역 (사설/루프백/링크 로컬)
PRIVATE_CIDRS = (
    "127.0.0.0/8",     # IPv4 loopback
    "10.0.0.0/8",      # RFC1918
    "172.16.0.0/12",   # RFC1918
    "192.168.0.0/16",  # RFC1918
    "169.254.0.0/16",  # RFC3927 link-local
    "::1/128",         # IPv6 loopback
    "fe80::/10",       # IPv6 link-local
    "fc00::/7",        # IPv6 unique local addr
)

# 링크 로컬 멀티캐스트 (ipaddress 모듈에 별도 판별 속성이 없음)
LINK_LOCAL_MULTICAST_CIDRS = ("224.0.0.0/24", "ff02::/16")

# 세션 상태
STATE_STARTING = "starting"
STATE_SERVING = "serving"
STATE_STOPPING = "stopping"
STATE_STOPPED = "stopped"


class WebShareError(Exception):
    """WebShare 기본 예외"""


class InterfaceError(WebShareError):
    """네트워크 인터페이스 조회 실패"""


class ServerError(WebShareError):
    """서버 바인딩/실행 실패"""


# ==========================================
# 2. 유틸리티 함수 (Utility Functions)
# ==========================================

class LogManager:
    def __init__(self, max_lines=MAX_LOG_LINES):
        self.history = deque(maxlen=max_lines)

    def add(self, msg, level="INFO"):
        timestamp = datetime.now().strftime("%H:%M:%S")
        formatted_msg = f"[{timestamp}] [{level}] {msg}"
        self.history.append(formatted_msg)
        # stdout은 QR 코드 출력용이므로 로그는 stderr로 보냅니다.
        print(formatted_msg, file=sys.stderr)

logger = LogManager()


def validate_path(base_dir: str, path: str) -> tuple:
    """
    경로 탐색 공격을 방지하기 위한 경로 검증 함수.

    Args:
        base_dir: 기본 허용 디렉토리
        path: 검증할 상대 경로

    Returns:
        tuple: (is_valid: bool, full_path: str, error_msg: str)
    """
    try:
        base_dir_normalized = os.path.abspath(base_dir)
        full_path = os.path.abspath(os.path.join(base_dir_normalized, path))

        # 경로가 기본 디렉토리 내에 있는지 확인
        if os.path.commonpath([base_dir_normalized, full_path]) != base_dir_normalized:
            return (False, None, "잘못된 경로입니다.")

        return (True, full_path, None)
    except ValueError as e:
        return (False, None, f"경로 검증 오류: {str(e)}")


def format_size(raw_size):
    if raw_size < 1024: return f"{raw_size} B"
    elif raw_size < 1024*1024: return f"{raw_size/1024:.1f} KB"
    elif raw_size < 1024*1024*1024: return f"{raw_size/(1024*1024):.1f} MB"
    return f"{raw_size/(1024*1024*1024):.1f} GB"


_DURATION_PART = r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)"
_DURATION_RE = re.compile(f"(?:{_DURATION_PART})+")
_DURATION_UNITS = {
    'ns': 1e-9, 'us': 1e-6, 'µs': 1e-6, 'μs': 1e-6,
    'ms': 1e-3, 's': 1, 'm': 60, 'h': 3600,
}

def parse_duration(value) -> float:
    """
    "90s", "1m30s", "1.5h", "500ms" 형식의 시간을 초 단위로 변환합니다.
    단위 없는 숫자는 초로 취급합니다. 음수는 허용하지 않습니다.
    """
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip()
        if not text:
            raise ValueError("빈 시간 값입니다.")
        try:
            seconds = float(text)
        except ValueError:
            if not _DURATION_RE.fullmatch(text):
                raise ValueError(f"잘못된 시간 형식: {value!r}")
            seconds = sum(float(num) * _DURATION_UNITS[unit]
                          for num, unit in re.findall(_DURATION_PART, text))
    if not math.isfinite(seconds):
        raise ValueError(f"유한한 시간이어야 합니다: {value!r}")
    if seconds < 0:
        raise ValueError(f"음수 시간은 사용할 수 없습니다: {value!r}")
    return seconds


class ConfigManager:
    def __init__(self, path=CONFIG_FILE):
        self.path = path
        self.config = {
            'folder': DEFAULT_DIRECTORY,
            'port': DEFAULT_PORT,
            'host': DEFAULT_HOST,
            'qr_prefix': DEFAULT_QR_PREFIX,
            'timeout': 0,  # 0이면 인터럽트 전까지 계속 실행
        }
        self.load()

    def load(self):
        if self.path and os.path.exists(self.path):
            try:
                with open(self.path, 'r', encoding='utf-8') as f:
                    self.config.update(json.load(f))
            except (OSError, ValueError) as e:
                logger.add(f"설정 로드 실패: {e}", "ERROR")

    def get(self, key): return self.config.get(key)
    def set(self, key, value): self.config[key] = value


# ==========================================
# 3. 주소 선택 및 QR 출력 (Address Selection)
# ==========================================

def build_private_networks(cidrs):
    """예약 대역 테이블 생성. 잘못된 항목이 하나라도 있으면 즉시 중단합니다."""
    networks = []
    for cidr in cidrs:
        try:
            networks.append(ipaddress.ip_network(cidr))
        except ValueError as e:
            raise RuntimeError(f"parse error on {cidr!r}: {e}") from e
    return tuple(networks)

PRIVATE_NETWORKS = build_private_networks(PRIVATE_CIDRS)
LINK_LOCAL_MULTICAST_NETWORKS = build_private_networks(LINK_LOCAL_MULTICAST_CIDRS)


def is_private_ip(address) -> bool:
    ip = ipaddress.ip_address(address)
    if ip.is_loopback or ip.is_link_local:
        return True
    if ip.is_multicast and any(ip in net for net in LINK_LOCAL_MULTICAST_NETWORKS):
        return True
    return any(ip in net for net in PRIVATE_NETWORKS)


def interface_addresses() -> list:
    """
    모든 네트워크 인터페이스에 할당된 IPv4 주소 목록 (호출 시점 스냅샷).
    IPv4 주소가 없는 인터페이스는 건너뜁니다.
    """
    try:
        interfaces = psutil.net_if_addrs()
    except (OSError, psutil.Error) as e:
        raise InterfaceError(f"네트워크 인터페이스 조회 실패: {e}") from e

    addresses = []
    for name, addrs in interfaces.items():
        for addr in addrs:
            if addr.family != socket.AF_INET:
                continue
            try:
                addresses.append(ipaddress.IPv4Address(addr.address))
            except ValueError:
                logger.add(f"알 수 없는 주소 형식 ({name}): {addr.address}", "WARN")
    return addresses


def parse_prefixes(raw) -> list:
    """쉼표 또는 공백으로 구분된 주소 접두어 목록을 파싱합니다."""
    return (raw or "").replace(',', ' ').split()


def print_qr(url, out=None):
    """터미널에 QR 코드 출력 (오류 정정 M, 여백 1, 반전 색상)"""
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, border=1)
    qr.add_data(url)
    qr.make(fit=True)
    qr.print_ascii(out=out if out is not None else sys.stdout, invert=True)


class QRSelection:
    """주소 선택 결과. source는 None, 'prefix', 'fallback' 중 하나"""

    def __init__(self, source=None, links=None):
        self.source = source
        self.links = links or []

    def __repr__(self):
        return f"QRSelection(source={self.source!r}, links={self.links!r})"


def select_qr_links(addresses, prefixes, port, present=None):
    """
    후보 주소마다 접두어를 검사하여 일치하면 QR 코드를 출력합니다.
    일치하는 주소가 하나도 없으면 첫 번째 공인 주소로 대체합니다.
    """
    if present is None:
        present = print_qr
    selection = QRSelection()
    fallback_link = None

    for ip in addresses:
        text = str(ip)
        private = is_private_ip(ip)
        link = f"http://{text}:{port}"
        logger.add(f"{link} [{'private' if private else 'public'}]")

        for prefix in prefixes:
            if text.startswith(prefix):
                present(link)
                selection.source = 'prefix'
                selection.links.append(link)
                break  # 주소당 한 번만 출력

        if not private and fallback_link is None:
            fallback_link = link

    if selection.source is None and fallback_link is not None:
        present(fallback_link)
        selection.source = 'fallback'
        selection.links.append(fallback_link)

    return selection


# ==========================================
# 4. Flask 웹 서버 로직
# ==========================================
LISTING_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{{ current_path }}</title>
</head>
<body>
<h1>{{ current_path }}</h1>
<pre>
{% for item in items %}<a href="{{ item.href }}">{{ item.name }}{% if item.is_dir %}/{% endif %}</a>  {{ item.mod_time }}  {{ item.size }}
{% endfor %}</pre>
</body>
</html>
"""

app = Flask(__name__)
app.config['SHARE_FOLDER'] = os.path.abspath(DEFAULT_DIRECTORY)


def client_address():
    port = request.environ.get('REMOTE_PORT')
    return f"{request.remote_addr}:{port}" if port else str(request.remote_addr)


@app.before_request
def log_request():
    logger.add(f"{client_address()} {request.method} {request.path}")

    # 파일 정보 기록은 부가 기능이므로 실패해도 요청 처리에 영향을 주지 않습니다.
    base_dir = app.config['SHARE_FOLDER']
    is_valid, full_path, _ = validate_path(base_dir, request.path.lstrip('/'))
    if not is_valid:
        return
    try:
        if os.path.isfile(full_path):
            name = os.path.relpath(full_path, base_dir).replace('\\', '/')
            logger.add(f"{name} [{os.path.getsize(full_path)}]")
    except OSError:
        pass


def list_directory(abs_path):
    items = []
    with os.scandir(abs_path) as entries:
        for entry in entries:
            try:
                is_dir = entry.is_dir()
                stat = entry.stat()
            except OSError:
                continue
            items.append({
                'name': entry.name,
                'is_dir': is_dir,
                'href': quote(entry.name) + ('/' if is_dir else ''),
                'size': "-" if is_dir else format_size(stat.st_size),
                'mod_time': datetime.fromtimestamp(stat.st_mtime).strftime('%Y-%m-%d %H:%M'),
            })

    items.sort(key=lambda x: (not x['is_dir'], x['name'].lower()))
    return items


@app.route('/', defaults={'path': ''})
@app.route('/<path:path>')
def index(path):
    base_dir = app.config['SHARE_FOLDER']
    is_valid, abs_path, _ = validate_path(base_dir, path)
    if not is_valid or not os.path.exists(abs_path):
        return abort(404)

    if os.path.isdir(abs_path):
        if not request.path.endswith('/'):
            return redirect(request.path + '/', code=301)
        if os.path.isfile(os.path.join(abs_path, 'index.html')):
            return send_from_directory(abs_path, 'index.html')
        try:
            items = list_directory(abs_path)
        except OSError as e:
            logger.add(f"탐색 오류: {e}", "ERROR")
            return abort(403)
        return render_template_string(LISTING_TEMPLATE, items=items, current_path=request.path)

    return send_from_directory(base_dir, path)


class ConnectionTracker:
    """진행 중인 요청 수를 세는 WSGI 미들웨어 (종료 시 드레인 대기용)"""

    def __init__(self, wsgi_app):
        self.wsgi_app = wsgi_app
        self.active = 0
        self._cond = threading.Condition()

    def __call__(self, environ, start_response):
        with self._cond:
            self.active += 1
        try:
            app_iter = self.wsgi_app(environ, start_response)
        except BaseException:
            self._release()
            raise
        # 응답 본문 전송이 끝나고 close()가 호출될 때 해제
        return ClosingIterator(app_iter, [self._release])

    def _release(self):
        with self._cond:
            self.active -= 1
            self._cond.notify_all()

    def wait_idle(self, timeout) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self.active <= 0, timeout)


# ==========================================
# 5. 공유 세션 관리 (Lifecycle)
# ==========================================
def check_bindable(host, port):
    """
    서버 생성 전에 포트 바인딩 가능 여부를 확인합니다. 실패 시 OSError.
    werkzeug는 바인딩 오류를 직접 출력하고 종료하므로 원인(errno)을 여기서 얻습니다.
    """
    family = socket.AF_INET6 if ':' in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as s:
        # HTTPServer와 같은 옵션으로 확인 (TIME_WAIT 포트는 허용)
        if os.name != 'nt':
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        s.bind((host, port))

class ShareSession:
    """
    하나의 포트에서 하나의 폴더를 공유하는 서버 세션.

    starting → serving → stopping → stopped 순서로만 진행합니다.
    종료 트리거(타이머, 시그널)는 하나의 Event를 공유하며 먼저 도착한 것만 의미가 있습니다.
    """

    def __init__(self, folder=DEFAULT_DIRECTORY, port=DEFAULT_PORT, host=DEFAULT_HOST,
                 timeout=0, grace=SHUTDOWN_GRACE_SECONDS, wsgi_app=None):
        self.folder = os.path.abspath(folder)
        self.port = int(port)
        self.host = host
        self.timeout = timeout or 0
        self.grace = grace
        if wsgi_app is None:
            app.config['SHARE_FOLDER'] = self.folder
            wsgi_app = app
        self.tracker = ConnectionTracker(wsgi_app)
        self.server = None
        self.state = STATE_STARTING
        self.outcome = None
        self.error = None
        self.stop_requested = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._thread = None
        self._timer = None

    def start(self):
        """포트 바인딩. 실패 시 ServerError"""
        log = logging.getLogger('werkzeug')
        log.setLevel(logging.ERROR)

        try:
            check_bindable(self.host, self.port)
            self.server = make_server(self.host, self.port, self.tracker, threaded=True)
        except OSError as e:
            if e.errno in (errno.EADDRINUSE, 10048):  # Address already in use
                raise ServerError(f"포트 {self.port}가 이미 사용 중입니다.") from e
            raise ServerError(f"서버 시작 오류: {e}") from e
        except SystemExit as e:
            # werkzeug는 바인딩 실패 시 직접 sys.exit(1)을 호출합니다.
            raise ServerError(f"서버 시작 오류: 포트 {self.port}에 바인딩할 수 없습니다.") from e

        self.port = self.server.server_port
        return self.port

    def serve(self):
        if self.server is None:
            self.start()

        self._thread = threading.Thread(target=self._serve_forever, name="webshare-server", daemon=True)
        self._thread.start()
        self.state = STATE_SERVING
        logger.add(f"서버 시작: http://{self.host}:{self.port} ({self.folder})")

        if self.timeout > 0:
            logger.add(f"{self.timeout:g}초 후 서버가 자동 종료됩니다.")
            self._timer = threading.Timer(self.timeout, self.request_shutdown, args=("timeout",))
            self._timer.daemon = True
            self._timer.start()

    def _serve_forever(self):
        try:
            self.server.serve_forever()
        except Exception as e:
            self.error = e
            logger.add(f"서버 실행 중 오류: {e}", "ERROR")
            self.stop_requested.set()

    def request_shutdown(self, reason="request"):
        with self._shutdown_lock:
            if self.stop_requested.is_set():
                return
            self.stop_requested.set()
        logger.add(f"종료 요청 수신 ({reason}), 서버를 종료합니다...")

    def wait(self, poll_interval=0.5):
        """종료 신호를 기다린 뒤 stop()을 호출합니다. 정상 드레인이면 True"""
        # 시그널 핸들러가 메인 스레드에서 실행될 수 있도록 짧게 끊어서 대기
        while not self.stop_requested.wait(poll_interval):
            pass

        if self._timer is not None:
            self._timer.cancel()

        if self.error is not None:
            # 리스너 오류는 드레인 없이 즉시 종료
            self.state = STATE_STOPPED
            raise ServerError(f"서버 치명적 오류: {self.error}") from self.error

        return self.stop()

    def stop(self):
        self.state = STATE_STOPPING
        deadline = time.monotonic() + self.grace
        clean = False

        try:
            if self._thread is not None:
                self.server.shutdown()  # accept 루프 중지
            self.server.server_close()
            clean = self.tracker.wait_idle(max(0, deadline - time.monotonic()))
        except Exception as e:
            logger.add(f"서버 종료 중 오류: {e}", "WARN")

        self.state = STATE_STOPPED
        if clean:
            self.outcome = 'clean'
            logger.add("서버가 정상적으로 중지되었습니다.")
        else:
            self.outcome = 'forced'
            logger.add(f"유예 시간({self.grace:g}초) 내에 요청이 끝나지 않아 강제 종료합니다.", "WARN")
        return clean


def install_signal_handlers(session):
    """SIGINT/SIGTERM을 종료 요청으로 연결. 이전 핸들러를 반환합니다."""
    def handler(signum, frame):
        session.request_shutdown(signal.Signals(signum).name)

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, handler)
    return previous


def restore_signal_handlers(previous):
    for signum, handler in previous.items():
        signal.signal(signum, handler if handler is not None else signal.SIG_DFL)


# ==========================================
# 6. Main Entry Point
# ==========================================
def build_parser():
    parser = argparse.ArgumentParser(
        prog="webshare",
        description="디렉토리를 HTTP로 공유하고 접속용 QR 코드를 출력합니다.")
    parser.add_argument("-p", "--port", type=int, help=f"port to listen on (default {DEFAULT_PORT})")
    parser.add_argument("-d", "--directory", help="directory to share (default current directory)")
    parser.add_argument("-q", "--qr-prefix",
                        help=f"comma or space separated ip addr prefixes to print qr code for (default {DEFAULT_QR_PREFIX!r})")
    parser.add_argument("-t", "--timeout", type=parse_duration,
                        help="temporary share: shut down after this duration (e.g. 90s, 10m, 1h30m)")
    parser.add_argument("--host", help=f"address to bind (default {DEFAULT_HOST})")
    parser.add_argument("-c", "--config", default=CONFIG_FILE, help=f"JSON config file (default {CONFIG_FILE})")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    conf = ConfigManager(args.config)
    for key, value in (('port', args.port), ('folder', args.directory), ('qr_prefix', args.qr_prefix),
                       ('timeout', args.timeout), ('host', args.host)):
        if value is not None:
            conf.set(key, value)

    try:
        timeout = parse_duration(conf.get('timeout') or 0)
        port = int(conf.get('port'))
    except (TypeError, ValueError) as e:
        logger.add(f"설정 값 오류: {e}", "ERROR")
        return 1

    folder = conf.get('folder')
    if not os.path.isdir(folder):
        logger.add(f"공유 폴더를 찾을 수 없습니다: {folder}", "ERROR")
        return 1

    try:
        addresses = interface_addresses()
    except InterfaceError as e:
        logger.add(str(e), "ERROR")
        return 1

    session = ShareSession(folder, port=port, host=conf.get('host'), timeout=timeout)
    try:
        session.start()
    except ServerError as e:
        logger.add(str(e), "ERROR")
        return 1

    select_qr_links(addresses, parse_prefixes(conf.get('qr_prefix')), session.port)

    previous = install_signal_handlers(session)
    try:
        session.serve()
        session.wait()
    except ServerError as e:
        logger.add(str(e), "ERROR")
        return 1
    finally:
        restore_signal_handlers(previous)
    return 0


if __name__ == '__main__':
    sys.exit(main())
