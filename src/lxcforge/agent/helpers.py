"""Shell library sourced before every template script."""

SCRIPT_HELPERS_PATH = "/tmp/script-helpers.sh"

SCRIPT_HELPERS = r'''#!/usr/bin/env bash
# lxcforge script helpers, sourced in the same shell as each template script.

# pct exec starts bash with a minimal environment
export PATH="/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
export DEBIAN_FRONTEND=noninteractive
export LC_ALL=C

_log() { printf '[%s] [%-7s] %s\n' "$(date '+%Y-%m-%d %H:%M:%S')" "$1" "${@:2}"; }
log_info()  { _log INFO    "$@"; }
log_warn()  { _log WARNING "$@"; }
log_error() { _log ERROR   "$@"; }

if [[ -f /etc/os-release ]]; then
  CONTAINER_OS="$(. /etc/os-release && echo "${ID:-unknown}")"
  CONTAINER_OS_VERSION="$(. /etc/os-release && echo "${VERSION_ID:-unknown}")"
else
  CONTAINER_OS="unknown"
  CONTAINER_OS_VERSION="unknown"
fi
export CONTAINER_OS CONTAINER_OS_VERSION

if command -v apt-get &>/dev/null; then _PKG_MGR="apt"
elif command -v apk &>/dev/null; then _PKG_MGR="apk"
elif command -v dnf &>/dev/null; then _PKG_MGR="dnf"
else _PKG_MGR="unknown"; fi
export _PKG_MGR

# First regular user (UID 1000), empty when there is none
CONTAINER_USER="$(getent passwd 1000 2>/dev/null | cut -d: -f1 || echo '')"
export CONTAINER_USER

is_installed() { command -v "$1" &>/dev/null; }

# run_as_user <command> [args...]
run_as_user() { sudo -H -u "${CONTAINER_USER}" -- "$@"; }

_apt_updated=false
_apt_update_once() {
  if [[ "$_apt_updated" == false ]]; then
    apt-get update -qq
    _apt_updated=true
  fi
}

# ensure_installed <package>
ensure_installed() {
  local pkg="$1"
  if ! command -v "$pkg" &>/dev/null; then
    _apt_update_once
    apt-get install -y -qq "$pkg"
  fi
}

# Blocks until dpkg/apt locks are free, gives up after 60s
wait_for_apt_lock() {
  local lock_files=( /var/lib/dpkg/lock-frontend /var/lib/dpkg/lock /var/lib/apt/lists/lock )
  local max_wait=60 waited=0
  while true; do
    local locked=false
    for f in "${lock_files[@]}"; do
      if [[ -f "$f" ]] && fuser "$f" &>/dev/null; then
        locked=true; break
      fi
    done
    "$locked" || return 0
    if (( waited >= max_wait )); then
      log_warn "Timed out waiting for apt lock after ${max_wait}s"
      return 1
    fi
    sleep 2; (( waited += 2 )) || true
  done
}

# generate_password [length]
generate_password() {
  local length="${1:-16}"
  tr -dc 'A-Za-z0-9' < /dev/urandom | head -c "$length"
}

# save_credential <service> <KEY> <VALUE>
# Stored as KEY=VALUE lines in /etc/infrahaus/credentials/<service>, mode 600.
save_credential() {
  local service="$1" key="$2" value="$3"
  local creds_dir="/etc/infrahaus/credentials"
  local creds_file="${creds_dir}/${service}"

  mkdir -p "$creds_dir"
  if [[ -f "$creds_file" ]] && grep -q "^${key}=" "$creds_file" 2>/dev/null; then
    sed -i "s|^${key}=.*|${key}=${value}|" "$creds_file"
  else
    echo "${key}=${value}" >> "$creds_file"
  fi
  chmod 600 "$creds_file"
}
'''
