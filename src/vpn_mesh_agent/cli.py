"""
CLI 메인 인터페이스
Click 및 Rich 기반 VPN 메시 운영 도구
"""

import os
import sys
import click
from datetime import timedelta
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from .config import Config
from .daemon import DaemonController
from .errors import FleetApplyError, MeshError
from .headscale import AuthKeyOptions, HeadscaleConfig, HeadscaleManager
from .keys import KeyGenerator
from .logger import init_logger, get_logger
from .mesh_client import EmbeddedMeshClient, MeshClientConfig
from .models import FleetResult
from .operations import OperationRecorder
from .vpn import VPNManager

console = Console()

AUTH_KEY_ENV = "VPN_MESH_AUTH_KEY"


def load_config(config_path, debug: bool = False, console_output: bool = True) -> Config:
    """설정 로드 및 로거 초기화"""
    cfg = Config(config_path)
    init_logger(cfg.agent.log_dir, cfg.agent.log_level, debug, console_output)
    return cfg


def require_valid(cfg: Config, need_nodes: bool = False):
    """설정 검증 실패 시 종료"""
    problems = cfg.validate()
    if need_nodes and not cfg.nodes:
        problems.append("nodes 목록이 비어 있습니다")
    if problems:
        console.print("[red]✗ 설정 오류:[/red]")
        for problem in problems:
            console.print(f"  [red]- {problem}[/red]")
        sys.exit(1)


def show_fleet_result(result: FleetResult):
    """호스트별 결과 표시"""
    table = Table(title=f"{result.operation} 결과", show_header=True, header_style="bold magenta")
    table.add_column("노드", style="cyan")
    table.add_column("상태", width=8)
    table.add_column("메시지")

    for host in result.results:
        table.add_row(host, "[green]✓[/green]", "")
    for failure in result.failures:
        table.add_row(failure.host, "[red]✗[/red]", failure.error)

    console.print(table)
    color = "green" if result.fail_count == 0 else "yellow"
    console.print(
        f"[{color}]성공 {result.success_count} / 실패 {result.fail_count} "
        f"({result.duration:.1f}초)[/{color}]"
    )


def headscale_manager(cfg: Config) -> HeadscaleManager:
    ts = cfg.tailscale
    return HeadscaleManager(HeadscaleConfig(
        api_url=ts.headscale_url,
        api_key=ts.api_key,
        namespace=ts.namespace,
        timeout=ts.api_timeout,
    ))


def mesh_client(cfg: Config, auth_key: str = "") -> EmbeddedMeshClient:
    ts = cfg.tailscale
    return EmbeddedMeshClient(cfg.cluster.name, MeshClientConfig(
        coordinator_url=ts.headscale_url,
        auth_key=auth_key,
        hostname=ts.hostname,
        state_root=ts.state_root,
        tailscaled_path=ts.tailscaled_path,
        tailscale_path=ts.tailscale_path,
    ))


@click.group()
@click.version_option(version="1.0.0")
def cli():
    """VPN Mesh Agent

    멀티 클라우드 클러스터 노드 간 VPN 메시의 피어를 관리합니다.
    """
    pass


@cli.command()
@click.argument('output', type=click.Path(), default='./config.yaml')
def init(output):
    """샘플 설정 파일 생성"""
    cfg = Config()
    cfg.create_sample(output)
    console.print(f"[green]✓ 샘플 설정 파일 생성: {output}[/green]")
    console.print("[cyan]설정 파일을 편집한 후 다음 명령어로 실행하세요:[/cyan]")
    console.print(f"[cyan]  vpn-mesh-agent join --config {output}[/cyan]")


@cli.command()
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True), help='설정 파일 경로')
def validate(config_path):
    """설정 파일 유효성 검사"""
    cfg = Config(config_path)
    problems = cfg.validate()

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("항목", style="cyan")
    table.add_column("값")
    table.add_row("클러스터", cfg.cluster.name)
    table.add_row("모드", cfg.cluster.mode)
    table.add_row("서브넷", cfg.network.subnet_cidr)
    table.add_row("Bastion", cfg.bastion.host if cfg.bastion.enabled else "아니오")
    table.add_row("노드 수", str(len(cfg.nodes)))
    table.add_row("동시 작업 수", str(cfg.fleet.max_workers))
    console.print(table)

    if problems:
        console.print("[red]✗ 설정 오류:[/red]")
        for problem in problems:
            console.print(f"  [red]- {problem}[/red]")
        sys.exit(1)
    console.print("[green]✓ 설정 파일이 유효합니다.[/green]")


@cli.command()
def keygen():
    """WireGuard 키 쌍 생성"""
    pair = KeyGenerator().generate()
    console.print(f"[bold]PrivateKey:[/bold] {pair.private_key}")
    console.print(f"[bold]PublicKey:[/bold]  {pair.public_key}")


@cli.command()
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--label', '-l', default="", help='피어 이름 (재실행 시 같은 IP 재사용)')
@click.option('--ip', 'vpn_ip', default=None, help='VPN IP 지정 (기본값: 자동 할당)')
@click.option('--public-key', default=None, help='기존 공개키 사용 (개인키는 직접 관리)')
@click.option('--machine', default="", help='머신 식별자')
@click.option('--output', '-o', type=click.Path(), default=None, help='클라이언트 설정 저장 경로')
@click.option('--debug', is_flag=True, help='디버그 모드')
def join(config_path, label, vpn_ip, public_key, machine, output, debug):
    """로컬 머신을 VPN 메시에 추가"""
    cfg = load_config(config_path, debug)
    require_valid(cfg, need_nodes=True)
    logger = get_logger()

    console.print(Panel.fit(
        f"[bold cyan]VPN Mesh Join[/bold cyan]\n클러스터: {cfg.cluster.name} / 노드 {len(cfg.nodes)}개",
        border_style="cyan"
    ))

    manager = VPNManager(cfg, debug=debug)
    try:
        result = manager.join(label=label, vpn_ip=vpn_ip, public_key=public_key,
                              machine=machine, output_path=output)
    except FleetApplyError as e:
        show_fleet_result(e.result)
        console.print(f"[red]✗ join 실패: {e}[/red]")
        sys.exit(1)
    except MeshError as e:
        logger.error(f"Join failed: {e}")
        console.print(f"[red]✗ join 실패: {e}[/red]")
        sys.exit(1)

    show_fleet_result(result.fleet)
    console.print(f"\n[bold green]✓ VPN IP: {result.vpn_ip}[/bold green]")
    if output:
        console.print(f"[green]클라이언트 설정 저장: {output}[/green]")
        console.print(f"[cyan]  sudo wg-quick up {output}[/cyan]")
    else:
        console.print("\n[bold]클라이언트 설정:[/bold]")
        console.print(result.client_config, markup=False, highlight=False)


@cli.command()
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--ip', 'vpn_ip', default=None, help='제거할 VPN IP (기본값: 로컬 인터페이스에서 감지)')
@click.option('--label', '-l', default=None, help='제거할 피어 이름')
@click.option('--public-key', default=None, help='제거할 공개키')
@click.option('--debug', is_flag=True, help='디버그 모드')
def leave(config_path, vpn_ip, label, public_key, debug):
    """VPN 메시에서 피어 제거"""
    cfg = load_config(config_path, debug)
    require_valid(cfg, need_nodes=True)
    logger = get_logger()

    manager = VPNManager(cfg, debug=debug)
    try:
        result = manager.leave(vpn_ip=vpn_ip, label=label, public_key=public_key)
    except FleetApplyError as e:
        show_fleet_result(e.result)
        console.print(f"[red]✗ leave 실패: {e}[/red]")
        sys.exit(1)
    except MeshError as e:
        logger.error(f"Leave failed: {e}")
        console.print(f"[red]✗ leave 실패: {e}[/red]")
        sys.exit(1)

    show_fleet_result(result.fleet)
    console.print(f"\n[bold green]✓ 피어 제거 완료: {result.vpn_ip or result.public_key}[/bold green]")


@cli.command()
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True), help='설정 파일 경로')
def peers(config_path):
    """등록된 피어 목록"""
    cfg = load_config(config_path)
    manager = VPNManager(cfg)
    registered = manager.list_peers()

    if not registered:
        console.print("[yellow]등록된 피어가 없습니다.[/yellow]")
        return

    table = Table(title=f"{cfg.cluster.name} 피어", show_header=True, header_style="bold magenta")
    table.add_column("라벨", style="cyan")
    table.add_column("VPN IP")
    table.add_column("공개키")
    table.add_column("등록 시각")
    for peer in registered:
        table.add_row(peer.label or "-", peer.vpn_ip, peer.public_key[:16] + "...", peer.created_at)
    console.print(table)


@cli.command()
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--save-report', is_flag=True, help='리포트를 파일로 저장')
@click.option('--skip-mesh', is_flag=True, help='노드 간 메시 ping 생략')
@click.option('--wait', default=0, type=int, help='healthy 가 될 때까지 대기할 최대 시간(초)')
def health(config_path, save_report, skip_mesh, wait):
    """bastion 및 노드 헬스체크"""
    cfg = load_config(config_path)
    require_valid(cfg, need_nodes=True)
    manager = VPNManager(cfg)

    with console.status("[bold green]헬스체크 수행 중...[/bold green]"):
        results = manager.check_health(save_report=save_report, mesh=not skip_mesh, wait=wait)

    status_color = "green" if results["overall_status"] == "healthy" else "red"
    console.print(f"\n[bold {status_color}]전체 상태: {results['overall_status'].upper()}[/bold {status_color}]\n")

    table = Table(title="헬스체크 상세 결과")
    table.add_column("항목", style="cyan")
    table.add_column("상태", style="magenta")
    table.add_column("메시지", style="white")
    for name, check in results["checks"].items():
        icon = "✅" if check.get("healthy") else "❌"
        table.add_row(name, f"{icon} {check.get('status', 'unknown')}", check.get("message", ""))
    console.print(table)

    if save_report:
        console.print(f"\n[green]✅ 리포트 저장: {results['report_file']}[/green]")

    sys.exit(0 if results["overall_status"] == "healthy" else 1)


@cli.command()
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--limit', default=20, help='표시할 최대 개수')
def history(config_path, limit):
    """join/leave 작업 이력"""
    cfg = load_config(config_path)
    records = OperationRecorder(cfg.agent.log_dir).history(cfg.cluster.name, limit)
    if not records:
        console.print("[yellow]작업 이력이 없습니다.[/yellow]")
        return

    table = Table(title="작업 이력", show_header=True, header_style="bold magenta")
    table.add_column("시각", style="cyan")
    table.add_column("작업")
    table.add_column("상태")
    table.add_column("성공/실패")
    table.add_column("소요(초)")
    for record in records:
        table.add_row(record.timestamp, record.operation, record.status,
                      f"{record.success_count}/{record.fail_count}", f"{record.duration:.1f}")
    console.print(table)


@cli.command("auth-key")
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--reusable', is_flag=True, help='재사용 가능한 키')
@click.option('--persistent', is_flag=True, help='ephemeral 이 아닌 키')
@click.option('--ttl-hours', type=int, default=None, help='만료 시간 (시간)')
@click.option('--tag', 'tags', multiple=True, help='ACL 태그 (여러 번 지정 가능)')
def auth_key(config_path, reusable, persistent, ttl_hours, tags):
    """Headscale 사전 인증 키 발급"""
    cfg = load_config(config_path)
    options = AuthKeyOptions(
        reusable=reusable,
        ephemeral=not persistent,
        expiration=timedelta(hours=ttl_hours or cfg.tailscale.auth_key_ttl_hours),
        tags=list(tags),
    )
    try:
        key = headscale_manager(cfg).create_auth_key(options)
    except MeshError as e:
        console.print(f"[red]✗ 인증 키 발급 실패: {e}[/red]")
        sys.exit(1)
    console.print(key, markup=False, highlight=False)


@cli.command()
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--proxy/--no-proxy', default=True, help='로컬 SOCKS5 프록시 시작')
@click.option('--proxy-port', type=int, default=0, help='프록시 포트 (0이면 자동)')
@click.option('--daemon', '-d', 'detach', is_flag=True, help='백그라운드로 실행')
@click.option('--internal-daemon', is_flag=True, hidden=True)
@click.option('--debug', is_flag=True, help='디버그 모드')
def connect(config_path, proxy, proxy_port, detach, internal_daemon, debug):
    """Headscale 메시에 연결 (임베디드 클라이언트)"""
    cfg = load_config(config_path, debug, console_output=not internal_daemon)
    require_valid(cfg)
    logger = get_logger()
    controller = DaemonController(cfg.cluster.name, cfg.tailscale.state_root)

    if controller.is_daemon_running():
        console.print(f"[yellow]이미 연결되어 있습니다 (PID: {controller.get_daemon_pid()})[/yellow]")
        sys.exit(1)

    if internal_daemon:
        key = os.environ.get(AUTH_KEY_ENV, "")
    else:
        try:
            key = headscale_manager(cfg).create_auth_key(AuthKeyOptions(
                ephemeral=True,
                expiration=timedelta(hours=cfg.tailscale.auth_key_ttl_hours),
            ))
        except MeshError as e:
            console.print(f"[red]✗ 인증 키 발급 실패: {e}[/red]")
            sys.exit(1)

    if detach:
        argv = [sys.executable, "-m", "vpn_mesh_agent.cli", "connect", "--internal-daemon",
                "--proxy-port", str(proxy_port), "--proxy" if proxy else "--no-proxy"]
        if cfg.config_path:
            argv += ["--config", cfg.config_path]
        if debug:
            argv.append("--debug")
        env = dict(os.environ, **{AUTH_KEY_ENV: key})
        try:
            pid = controller.spawn_detached(argv, ready_timeout=cfg.tailscale.connect_timeout + 10, env=env)
        except MeshError as e:
            console.print(f"[red]✗ 백그라운드 연결 실패: {e}[/red]")
            sys.exit(1)
        console.print(f"[green]✓ 백그라운드 연결 완료 (PID: {pid})[/green]")
        port = controller.saved_proxy_port()
        if port:
            console.print(f"[cyan]SOCKS5 프록시: 127.0.0.1:{port}[/cyan]")
        return

    client = mesh_client(cfg, key)
    if not internal_daemon:
        console.print("[cyan]메시 연결 중... (Ctrl+C로 종료)[/cyan]")
    logger.info(f"Starting mesh client for {cfg.cluster.name}")
    sys.exit(controller.run(client, start_proxy=proxy, proxy_port=proxy_port,
                            connect_timeout=cfg.tailscale.connect_timeout))


@cli.command()
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True), help='설정 파일 경로')
def disconnect(config_path):
    """백그라운드 메시 연결 종료"""
    cfg = load_config(config_path)
    controller = DaemonController(cfg.cluster.name, cfg.tailscale.state_root)
    if controller.stop_daemon():
        console.print("[green]✓ 연결 해제 완료[/green]")
    else:
        console.print("[yellow]실행 중인 연결이 없습니다.[/yellow]")


@cli.command()
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True), help='설정 파일 경로')
def status(config_path):
    """메시 연결 상태"""
    cfg = load_config(config_path)
    controller = DaemonController(cfg.cluster.name, cfg.tailscale.state_root)
    running = controller.is_daemon_running()

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("항목", style="cyan")
    table.add_column("값")
    table.add_row("클러스터", cfg.cluster.name)
    table.add_row("데몬", f"실행 중 (PID: {controller.get_daemon_pid()})" if running else "중지됨")

    existing = EmbeddedMeshClient.load_existing(cfg.cluster.name, mesh_client(cfg).config) if running else None
    if existing is not None:
        mesh = existing.status()
        table.add_row("메시 IP", mesh.mesh_ip or "-")
        table.add_row("호스트명", mesh.hostname)
        table.add_row("피어 수", str(mesh.peer_count))
        table.add_row("코디네이터", mesh.coordinator_url)
        port = controller.saved_proxy_port()
        table.add_row("SOCKS5 프록시", f"127.0.0.1:{port}" if port else "-")

    console.print(table)


def main():
    """메인 엔트리 포인트"""
    cli()


if __name__ == '__main__':
    main()
