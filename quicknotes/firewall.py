import ipaddress
import re
from urllib.parse import urlparse


UNKNOWN_IP = 'unknown'
CLIENT_IP_HEADERS = ('CF-Connecting-IP', 'X-Forwarded-For', 'X-Real-IP')


def is_valid_ip(value):
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def resolve_client_ip(headers, remote_addr):
    candidates = [headers.get(name, '') for name in CLIENT_IP_HEADERS]
    candidates.append(remote_addr or '')
    for raw in candidates:
        if not raw:
            continue
        ip = raw.split(',')[0].strip()
        if is_valid_ip(ip):
            return ip
    return UNKNOWN_IP


def ip_matches_cidr(ip, cidr):
    if '/' not in cidr:
        return ip == cidr
    try:
        address = ipaddress.ip_address(ip)
        network = ipaddress.ip_network(cidr.strip(), strict=False)
    except ValueError:
        return False
    if address.version != network.version:
        return False
    return address in network


def ip_matches_wildcard(ip, pattern):
    regex = re.escape(pattern).replace(r'\*', r'\d+')
    return re.fullmatch(regex, ip) is not None


def ip_matches_pattern(ip, pattern):
    pattern = str(pattern or '').strip()
    if not pattern:
        return False
    if ip == pattern:
        return True
    if '/' in pattern:
        return ip_matches_cidr(ip, pattern)
    if '*' in pattern:
        return ip_matches_wildcard(ip, pattern)
    return False


def check_ip_firewall(ip, mode, whitelist=(), blacklist=()):
    """Return True when ``ip`` may reach the API under ``mode``."""
    if mode == 'disabled':
        return True

    if ip == UNKNOWN_IP:
        return mode != 'whitelist'

    if mode == 'blacklist':
        return not any(ip_matches_pattern(ip, p) for p in blacklist)

    if mode == 'whitelist':
        return any(ip_matches_pattern(ip, p) for p in whitelist)

    return True


# ------------------- API keys -------------------
def request_origin_host(headers):
    for name in ('Origin', 'Referer'):
        value = headers.get(name, '')
        if value:
            return urlparse(value).hostname
    return None


def host_without_port(host):
    host = str(host or '').strip().lower()
    if host.startswith('['):
        return host.split(']')[0].lstrip('[')
    return host.split(':')[0]


def match_domain(domain, pattern):
    domain = str(domain or '').lower()
    pattern = str(pattern or '').lower()
    if domain == pattern:
        return True
    if pattern.startswith('*.'):
        suffix = pattern[2:]
        return domain == suffix or domain.endswith('.' + suffix)
    return False


def verify_api_key(headers, server_host, api_key, api_keys, required):
    if not required:
        return True

    origin = request_origin_host(headers)
    if origin and origin == host_without_port(server_host):
        return True

    if not api_key or api_key not in api_keys:
        return False

    domains = api_keys[api_key]
    if not domains:
        return True
    if not origin:
        return False
    return any(match_domain(origin, d) for d in domains)
