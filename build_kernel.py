#!/usr/bin/env python3

###############################################################
## Script to build a Tesla Android kernel with TTL mangling support
##
## Clones the kernel source for the selected target, applies the config
## extracted from a working device, enables the netfilter TTL/HL options,
## builds Image + dtbs and collects everything into an output directory.
##
## Usage:
##   $ ./build_kernel.py [-t <target id>] [-c <config>] [-o <output directory>]
##
## E.g.:
##   $ adb shell su -c "zcat /proc/config.gz" > tesla_config
##   $ ./build_kernel.py -t rpi4
##   $ ./build_kernel.py -t rpi4 --from-device --zip
##
## Dependencies:
##   $ sudo apt install -y build-essential bc bison flex libssl-dev libncurses-dev gcc-aarch64-linux-gnu git
##   $ sudo apt -y install python3 python3-requests python3-yaml
##   OR
##   $ python3 -m venv .env; source .env/bin/activate; python3 -m pip install requests pyyaml

import argparse
import datetime
import fnmatch
import hashlib
import os
import re
import requests
import shutil
import subprocess
import sys
import yaml
import zipfile

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))

DEFAULT_TARGET = "rpi4"
DEFAULT_KERNEL_DIR = os.path.join("~", "tesla-kernel-build")
DEFAULT_OUTPUT_DIR = os.path.join("~", "tesla-kernel-output")

# Fallbacks for keys missing from targets.yml
KERNEL_REPO = "https://github.com/GloDroid/glodroid_forks.git"
KERNEL_BRANCH = "kernel-broadcom-2024w50"
CONFIG_FILE = "tesla_config"

TTL_OPTIONS = [
    "CONFIG_NETFILTER_XT_TARGET_HL",
    "CONFIG_IP_NF_TARGET_TTL",
    "CONFIG_NETFILTER_XT_MATCH_HL",
    "CONFIG_IP_NF_MATCH_TTL",
]

# Only the targets are checked; the matches may legitimately end up as modules
TTL_VERIFY = [
    "CONFIG_IP_NF_TARGET_TTL",
    "CONFIG_NETFILTER_XT_TARGET_HL",
]

BUILD_TOOLS = ["git", "make", "bc", "bison", "flex"]

# Keys of a target that hold lists of names
LIST_KEYS = ["tools", "enable", "verify"]

# Used when targets.yml is not installed next to the script
BUILTIN_TARGETS = {DEFAULT_TARGET: {}}

APT_PACKAGES = "build-essential bc bison flex libssl-dev libncurses-dev gcc-aarch64-linux-gnu git"

TTL_PATTERN = re.compile(r"TARGET_TTL|TARGET_HL|MATCH_TTL|MATCH_HL")

DEVICE_CONFIG_CMD = ["adb", "shell", "su -c 'zcat /proc/config.gz'"]

dl_headers = {
    "User-Agent": "Tesla Android Kernel Builder",
    "Accept-Encoding": "identity",
}

README_TEMPLATE = """{name} Kernel with TTL Mangling Support
{underline}

Files included:
- {image}: The kernel image
{dtb_line}
- kernel.config: The configuration the kernel was built with

Installation:
1. Mount the boot partition of your Tesla Android SD card
2. Backup the existing kernel: cp {image} {image}.backup
3. Copy the new {image} to the boot partition
4. Copy the .dtb file(s) to the boot partition
5. Unmount and boot your Pi

After booting, test TTL mangling:
    adb shell
    su
    iptables -t mangle -A POSTROUTING -j TTL --ttl-set 64
    iptables -t mangle -L -v

To make persistent, add the iptables command to an init script.
"""


def abort(err):
    print("[-] Error: " + err, file=sys.stderr)
    sys.exit(1)


def warn(msg):
    print("[-] Warning: " + msg, file=sys.stderr)


def run(cmd, cwd=None, env=None, fatal=True, stdout=None):
    print("[i] Running: " + " ".join(cmd))

    try:
        p = subprocess.run(cmd, cwd=cwd, env=env, stdout=stdout)
    except OSError as e:
        abort("Unable to execute {}: {}".format(cmd[0], e))

    if p.returncode != 0 and fatal:
        abort("Command failed (exit {}): {}".format(p.returncode, " ".join(cmd)))
    return p.returncode


def read_file(file):
    try:
        print("[i] Reading: {}".format(file))
        with open(file) as f:
            data = f.read()
    except Exception as e:
        abort("Cannot open input file: {} - {}".format(file, e))
    return data


def yaml_parse(data):
    result = ""
    lines = data.split("\n")
    for line in lines:
        if not line.startswith("#"):
            # yaml doesn't like tabs so let's replace them with four spaces
            result += "{}\n".format(line.replace("\t", "    "))
    return yaml.safe_load(result)


def read_targets(targets_yml):
    if not os.path.exists(targets_yml):
        abort("Could not find %s!" % targets_yml)

    yml = yaml_parse(read_file(targets_yml))
    if not isinstance(yml, list):
        abort("%s should contain a list of build targets" % targets_yml)

    targets = {}
    for element in yml:
        if not isinstance(element, dict):
            abort("Unexpected entry in %s: %r" % (targets_yml, element))
        for target_id, values in element.items():
            if values is None:
                values = {}
            if not isinstance(values, dict):
                abort("Target %s in %s should be a mapping, not %r" % (target_id, targets_yml, values))
            for key in LIST_KEYS:
                value = values.get(key)
                if value is not None and not (
                    isinstance(value, list) and all(isinstance(v, str) for v in value)
                ):
                    abort("Target %s in %s: %s should be a list of names" % (target_id, targets_yml, key))
            targets[target_id] = values
    return targets


def read_key(target, key, default=""):
    value = target.get(key)
    if value is None:
        return default
    return value


def sha512sum(file_name):
    sha = hashlib.sha512()
    with open(file_name, "rb") as f:
        for chunk in iter(lambda: f.read(4096), b""):
            sha.update(chunk)
    return sha.hexdigest()


def download(url, file_name, verify_sha):
    try:
        u = requests.get(url, stream=True, headers=dl_headers)
        u.raise_for_status()
    except requests.exceptions.RequestException as e:
        abort(str(e))

    download_ok = False

    if u.headers.get("Content-Length"):
        file_size = int(u.headers["Content-Length"])
        print("[i] Downloading: %s (%s bytes) - %s" % (os.path.basename(file_name), file_size, url))
    else:
        file_size = 0
        print("[i] Downloading: %s (unknown size) - %s" % (os.path.basename(file_name), url))

    is_tty = sys.stdout.isatty()

    sha = hashlib.sha512()
    tmp = file_name + ".part"
    with open(tmp, "wb") as f:
        try:
            dl_bytes = 0
            for chunk in u.iter_content(chunk_size=8192):
                if not chunk:
                    continue   # Ignore empty chunks
                f.write(chunk)
                sha.update(chunk)

                if is_tty:
                    dl_bytes += len(chunk)

                    if file_size:
                        status = r"%10d  [%3.2f%%]" % (dl_bytes, dl_bytes * 100.0 / file_size)
                    else:
                        status = r"%10d" % dl_bytes

                    status = status + chr(8) * (len(status) + 1)
                    print(status + "\r", end="")
            download_ok = True
        except requests.exceptions.RequestException as e:
            print()
            print("[-] Error: " + str(e), file=sys.stderr)
        except KeyboardInterrupt:
            print()
            print("[-] Download cancelled", file=sys.stderr)
            f.close()
            os.remove(tmp)
            raise

    if download_ok:
        sha = sha.hexdigest()
        print("[i]   SHA512: " + sha)
        if verify_sha:
            print("[i]   Expect: " + verify_sha)
            if sha == verify_sha.lower():
                print("[+]   Hash matches: OK")
            else:
                download_ok = False
                print("[-]   Hash mismatch! " + file_name, file=sys.stderr)
        else:
            warn("No SHA512 hash specified for verification!")

    if download_ok:
        os.replace(tmp, file_name)
        print("[+]   Download OK: {}".format(file_name))
    else:
        # Remove the partial file so the next run doesn't pick it up as a config
        if os.path.isfile(tmp):
            os.remove(tmp)
        abort("There was a problem downloading the file: " + file_name)


def fetch_config_from_device(dst, force=False):
    if os.path.isfile(dst) and not force:
        print("[i] Found local config, not pulling from device: " + dst)
        return dst

    print("[i] Pulling kernel config from the device via adb")
    tmp = dst + ".part"
    with open(tmp, "wb") as f:
        rc = run(DEVICE_CONFIG_CMD, fatal=False, stdout=f)

    if rc != 0 or os.path.getsize(tmp) == 0:
        os.remove(tmp)
        abort("Could not read /proc/config.gz from the device (is it connected and rooted?)")

    os.replace(tmp, dst)
    print("[+] Saved device config: " + dst)
    return dst


def fetch_config_from_url(url, dst, verify_sha, force=False):
    if force and os.path.isfile(dst):
        print("[i] Deleting: " + dst)
        os.remove(dst)

    if os.path.isfile(dst):
        sha = sha512sum(dst)
        if verify_sha and sha != verify_sha.lower():
            print("[-] Hash mismatch, downloading again: %s (SHA512: %s)" % (dst, sha), file=sys.stderr)
            os.remove(dst)
        else:
            print("[+] Found config: %s (SHA512: %s)" % (dst, sha))
            return dst

    download(url, dst, verify_sha)
    return dst


def find_config(name, search_dirs):
    for directory in search_dirs:
        path = os.path.join(directory, name)
        if os.path.isfile(path):
            return path
    return None


def locate_config(name, explicit=None, search_dirs=None):
    if explicit:
        if os.path.isfile(explicit):
            return explicit
        abort("Config file not found: " + explicit)

    if search_dirs is None:
        search_dirs = [SCRIPT_DIR, os.getcwd()]

    path = find_config(name, search_dirs)
    if path:
        return path

    print("[-] Error: %s not found!" % name, file=sys.stderr)
    print("", file=sys.stderr)
    print("Please extract the kernel config from your working Tesla Android device:", file=sys.stderr)
    print("", file=sys.stderr)
    print("  1. Connect to your Pi via ADB", file=sys.stderr)
    print('  2. Run: adb shell su -c "zcat /proc/config.gz" > %s' % name, file=sys.stderr)
    print("  3. Place %s in: %s" % (name, search_dirs[0]), file=sys.stderr)
    print("  4. Re-run this script (or use --from-device)", file=sys.stderr)
    print("", file=sys.stderr)
    sys.exit(1)


def missing_tools(tools):
    return [tool for tool in tools if shutil.which(tool) is None]


def check_dependencies(tools):
    print("[i] Checking dependencies...")

    missing = missing_tools(tools)
    if missing:
        print("[-] Missing dependencies: " + " ".join(missing), file=sys.stderr)
        print("", file=sys.stderr)
        print("Install with:", file=sys.stderr)
        print("  sudo apt update", file=sys.stderr)
        print("  sudo apt install -y " + APT_PACKAGES, file=sys.stderr)
        if "adb" in missing:
            print("  sudo apt install -y adb", file=sys.stderr)
        sys.exit(1)

    print("[+] All dependencies found")


def sync_source(repo, branch, kernel_dir, fresh=False):
    print("[i] Setting up kernel source")

    if fresh and os.path.exists(kernel_dir):
        print("[i] Removing previous kernel source: " + kernel_dir)
        shutil.rmtree(kernel_dir)

    if os.path.isdir(kernel_dir):
        if not os.path.isdir(os.path.join(kernel_dir, ".git")):
            abort("%s exists but is not a git checkout (remove it or use --fresh)" % kernel_dir)

        print("[i] Kernel directory exists, updating: " + kernel_dir)
        run(["git", "fetch", "origin"], cwd=kernel_dir)
        run(["git", "checkout", branch], cwd=kernel_dir)
        if run(["git", "pull", "origin", branch], cwd=kernel_dir, fatal=False) != 0:
            warn("git pull failed, building the current checkout")
    else:
        print("[i] Cloning kernel source (this may take a while)")
        run(["git", "clone", "--branch", branch, "--depth", "1", repo, kernel_dir])

    print("[+] Kernel source ready: %s (%s)" % (kernel_dir, branch))


def build_env(arch, cross_compile):
    env = os.environ.copy()
    env["ARCH"] = arch
    env["CROSS_COMPILE"] = cross_compile
    return env


def apply_config(config_path, kernel_dir, options, env):
    config_tool = os.path.join(kernel_dir, "scripts", "config")
    if not os.path.isfile(config_tool):
        abort("Kernel tree has no scripts/config: " + kernel_dir)

    print("[i] Applying config: " + config_path)
    shutil.copy(config_path, os.path.join(kernel_dir, ".config"))

    print("[i] Enabling TTL mangling options")
    for option in options:
        run([os.path.join(".", "scripts", "config"), "--enable", option], cwd=kernel_dir, env=env)

    print("[i] Resolving config dependencies")
    run(["make", "olddefconfig"], cwd=kernel_dir, env=env)

    print("[+] Finished applying config")


def read_kernel_config(config_path):
    values = {}
    unset = re.compile(r"^# (CONFIG_\w+) is not set$")

    with open(config_path) as f:
        for line in f:
            line = line.strip()
            m = unset.match(line)
            if m:
                values[m.group(1)] = "n"
                continue
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            values[key] = value
    return values


def report_ttl_options(config_path):
    print("[i] TTL configuration:")
    with open(config_path) as f:
        for line in f:
            if line.startswith("#"):
                continue
            if TTL_PATTERN.search(line):
                print("[i]   " + line.rstrip())


def verify_options(config_path, options):
    values = read_kernel_config(config_path)
    return [option for option in options if values.get(option) != "y"]


def compile_kernel(kernel_dir, env, jobs=None):
    if not jobs:
        jobs = os.cpu_count() or 1

    print("[i] Building kernel (this will take 30-60 minutes)")
    print("[i] Using %d CPU cores" % jobs)
    run(["make", "-j%d" % jobs, "Image", "dtbs"], cwd=kernel_dir, env=env)
    print("[+] Finished building kernel")


def collect_artifacts(kernel_dir, output_dir, arch, image, dtb_dir, dtb_glob, dtb_primary=""):
    print("[i] Collecting build artifacts")

    if not os.path.exists(output_dir):
        os.makedirs(output_dir)

    boot_path = os.path.join(kernel_dir, "arch", arch, "boot")

    # Copy kernel image
    image_path = os.path.join(boot_path, image)
    if not os.path.isfile(image_path):
        abort("Kernel image was not built: " + image_path)
    shutil.copy(image_path, os.path.join(output_dir, image))
    print("[+]   Copied: " + image)

    # Copy the board DTB first, then every DTB matching the target
    dts_path = os.path.join(boot_path, "dts", dtb_dir)
    dtbs = []
    if dtb_primary and os.path.isfile(os.path.join(dts_path, dtb_primary)):
        dtbs.append(dtb_primary)
    if os.path.isdir(dts_path):
        for f in sorted(os.listdir(dts_path)):
            if fnmatch.fnmatch(f, dtb_glob) and f not in dtbs:
                dtbs.append(f)

    for dtb in dtbs:
        shutil.copy(os.path.join(dts_path, dtb), os.path.join(output_dir, dtb))
        print("[+]   Copied: " + dtb)
    if not dtbs:
        warn("No device tree blobs matching %s found in %s" % (dtb_glob, dts_path))

    # Keep the config the image was built with
    config_path = os.path.join(kernel_dir, ".config")
    if os.path.isfile(config_path):
        shutil.copy(config_path, os.path.join(output_dir, "kernel.config"))
        print("[+]   Copied: kernel.config")

    print("[+] Finished collecting build artifacts")
    return [image] + dtbs


def write_readme(output_dir, name, image, dtb, board="Raspberry Pi 4"):
    title = "%s Kernel with TTL Mangling Support" % name
    if dtb:
        dtb_line = "- %s: Device tree blob for %s" % (dtb, board)
    else:
        dtb_line = "- (no device tree blob was built, keep the one on the boot partition)"
    readme = README_TEMPLATE.format(
        name=name,
        underline="=" * len(title),
        image=image,
        dtb_line=dtb_line,
    )

    readme_path = os.path.join(output_dir, "README.txt")
    with open(readme_path, "w") as f:
        f.write(readme)
    print("[+] Wrote: " + readme_path)
    return readme_path


def zip(src, dst):
    print("[i] Creating zip file: " + dst)

    try:
        zf = zipfile.ZipFile(dst, "w", zipfile.ZIP_DEFLATED)
        abs_src = os.path.abspath(src)
        for dirname, subdirs, files in os.walk(src):
            for filename in files:
                absname = os.path.abspath(os.path.join(dirname, filename))
                # Archives from earlier runs stay out of the new one
                if absname == os.path.abspath(dst) or filename.endswith(".zip"):
                    continue
                arcname = absname[len(abs_src) + 1 :]
                zf.write(absname, arcname)
                print("[+]   Added: " + arcname)
        zf.close()
    except IOError as e:
        abort("Unable to create the zip file: %s" % e)

    print("[+] Finished creating zip")


def summary(output_dir):
    print("")
    print("[+] ============================================")
    print("[+]  BUILD COMPLETE!")
    print("[+] ============================================")
    print("")
    print("[i] Output files are in: " + output_dir)

    for f in sorted(os.listdir(output_dir)):
        path = os.path.join(output_dir, f)
        if os.path.isfile(path):
            print("[i]   %-28s %10d bytes  SHA512: %s" % (f, os.path.getsize(path), sha512sum(path)))

    print("")
    print("[i] Next steps:")
    print("[i]   1. Copy files from %s to your SD card's boot partition" % output_dir)
    print("[i]   2. Boot the Pi and verify with:")
    print("[i]      adb shell su -c 'iptables -t mangle -A POSTROUTING -j TTL --ttl-set 64'")


def build_arg_parser(targets, targets_yml):
    help_target = "Allowed target IDs (from %s): \n" % targets_yml
    for target_id in targets:
        help_target += "    %s\n" % target_id

    parser = argparse.ArgumentParser(
        description="Tesla Android kernel builder (TTL mangling support)",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("--target", "-t", action="store", default=DEFAULT_TARGET, help=help_target)
    parser.add_argument(
        "--targets",
        action="store",
        metavar="FILE",
        help="Read build targets from FILE instead of targets.yml",
    )
    parser.add_argument(
        "--config",
        "-c",
        action="store",
        metavar="FILE",
        help="Kernel config to apply (default: search the script and current directory)",
    )
    parser.add_argument(
        "--from-device",
        "-d",
        action="store_true",
        help="Pull /proc/config.gz from the connected device with adb",
    )
    parser.add_argument("--config-url", action="store", metavar="URL", help="Download the kernel config from URL")
    parser.add_argument(
        "--config-sha512", action="store", metavar="HASH", help="Expected SHA512 of --config-url"
    )
    parser.add_argument(
        "--force-download", "-f", action="store_true", help="Replace an existing local config when fetching"
    )
    parser.add_argument(
        "--kernel-dir", "-k", action="store", metavar="DIR", default=DEFAULT_KERNEL_DIR, help="Kernel source checkout"
    )
    parser.add_argument(
        "--output-dir", "-o", action="store", metavar="DIR", default=DEFAULT_OUTPUT_DIR, help="Where artifacts go"
    )
    parser.add_argument("--jobs", "-j", action="store", type=int, metavar="N", help="Parallel make jobs (default: all cores)")
    parser.add_argument("--fresh", action="store_true", help="Delete the kernel checkout and clone again")
    parser.add_argument("--skip-sync", action="store_true", help="Build the existing checkout without touching git")
    parser.add_argument("--zip", "-z", action="store_true", help="Package the output directory as a zip")
    return parser


def main(argv=None):
    t = datetime.datetime.now()
    TimeStamp = "%04d%02d%02d_%02d%02d%02d" % (
        t.year,
        t.month,
        t.day,
        t.hour,
        t.minute,
        t.second,
    )

    # --targets has to be known before the parser can list the target IDs
    targets_yml = os.path.join(SCRIPT_DIR, "targets.yml")
    pre = argparse.ArgumentParser(add_help=False, allow_abbrev=False)
    pre.add_argument("--targets")
    known, _ = pre.parse_known_args(argv)
    if known.targets:
        targets_yml = known.targets

    if known.targets or os.path.exists(targets_yml):
        targets = read_targets(targets_yml)
    else:
        targets_yml = "built-in defaults"
        targets = BUILTIN_TARGETS
    parser = build_arg_parser(targets, targets_yml)

    #
    # Check input
    #

    args = parser.parse_args(argv)

    if args.target not in targets:
        abort("target %s not found in %s" % (args.target, targets_yml))
    if args.fresh and args.skip_sync:
        abort("--fresh and --skip-sync are mutually exclusive")
    if args.from_device and args.config_url:
        abort("--from-device and --config-url are mutually exclusive")
    if args.config_sha512 and not args.config_url:
        abort("--config-sha512 needs --config-url")
    if args.jobs is not None and args.jobs < 1:
        abort("--jobs must be at least 1")

    #
    # Read target
    #

    target = targets[args.target]
    name = read_key(target, "name", "Tesla Android")
    repo = read_key(target, "repo", KERNEL_REPO)
    branch = str(read_key(target, "branch", KERNEL_BRANCH))
    arch = read_key(target, "arch", "arm64")
    cross_compile = read_key(target, "cross_compile", "aarch64-linux-gnu-")
    config_file = read_key(target, "config_file", CONFIG_FILE)
    image = read_key(target, "image", "Image")
    dtb_dir = read_key(target, "dtb_dir", "broadcom")
    dtb_glob = read_key(target, "dtb_glob", "bcm2711*.dtb")
    dtb_primary = read_key(target, "dtb_primary", "bcm2711-rpi-4-b.dtb")
    tools = list(read_key(target, "tools", BUILD_TOOLS))
    enable = list(read_key(target, "enable", TTL_OPTIONS))
    verify = list(read_key(target, "verify", TTL_VERIFY))

    kernel_dir = os.path.abspath(os.path.expanduser(args.kernel_dir))
    output_dir = os.path.abspath(os.path.expanduser(args.output_dir))

    #
    # Feedback
    #

    print("[i] ============================================")
    print("[i]  Tesla Android Kernel Build Script")
    print("[i]  With TTL Mangling Support")
    print("[i] ============================================")
    print("[i] Target: %s (%s)" % (args.target, name))
    print("[i]   repo          : " + repo)
    print("[i]   branch        : " + branch)
    print("[i]   arch          : " + arch)
    print("[i]   cross_compile : " + cross_compile)
    print("[i]   kernel dir    : " + kernel_dir)
    print("[i]   output dir    : " + output_dir)
    if args.fresh:
        print("[i] Fresh clone: true")
    if args.skip_sync:
        print("[i] Skip source sync: true")

    #
    # Preflight
    #

    if args.from_device:
        check_dependencies(["adb"])
        config_path = fetch_config_from_device(
            args.config or os.path.join(os.getcwd(), config_file), args.force_download
        )
    elif args.config_url:
        config_path = fetch_config_from_url(
            args.config_url,
            args.config or os.path.join(os.getcwd(), config_file),
            args.config_sha512,
            args.force_download,
        )
    else:
        config_path = locate_config(config_file, args.config)
    config_path = os.path.abspath(config_path)
    print("[+] Found config: " + config_path)

    check_dependencies(tools + [cross_compile + "gcc"])

    #
    # Do actions
    #

    if args.skip_sync:
        if not os.path.isdir(kernel_dir):
            abort("No kernel source to build in %s (drop --skip-sync)" % kernel_dir)
    else:
        sync_source(repo, branch, kernel_dir, args.fresh)

    env = build_env(arch, cross_compile)
    apply_config(config_path, kernel_dir, enable, env)

    kernel_config = os.path.join(kernel_dir, ".config")
    report_ttl_options(kernel_config)
    not_enabled = verify_options(kernel_config, verify)
    if not_enabled:
        warn("TTL options may not be fully enabled (%s). Check .config manually." % ", ".join(not_enabled))
    else:
        print("[+] TTL support properly configured!")

    compile_kernel(kernel_dir, env, args.jobs)

    copied = collect_artifacts(kernel_dir, output_dir, arch, image, dtb_dir, dtb_glob, dtb_primary)
    dtbs = copied[1:]
    write_readme(output_dir, name, image, dtbs[0] if dtbs else None)

    if args.zip:
        zip(output_dir, os.path.join(output_dir, "tesla-kernel-ttl-%s-%s.zip" % (args.target, TimeStamp)))

    summary(output_dir)
    print("[+] Done!")
    return 0


def entry():
    try:
        return main()
    except KeyboardInterrupt:
        print()
        print("[-] Build cancelled", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(entry())
