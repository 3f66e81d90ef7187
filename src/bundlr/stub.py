from __future__ import annotations

import logging
import shutil
from pathlib import Path
from string import Template
from typing import List, Optional

from .config import BuildConfig
from .errors import StubCompileError
from .payload import SCAN_WINDOW, TRAILER_MAGIC, TRAILER_SIZE
from .process import ProcessRunner
from .targets import TargetPlatform, host_target, python_executable_path, zig_target

LOG = logging.getLogger(__name__)

STUB_NAME = "bundlr_stub"
_CROSS_COMPILERS = {"zig", "clang"}

# Runs inside the embedded interpreter as: python bootstrap.py <bundle_dir> <user args...>
BOOTSTRAP_SOURCE = """\
import glob
import json
import os
import runpy
import subprocess
import sys

bundle_dir = sys.argv.pop(1)
with open(os.path.join(bundle_dir, "metadata.json"), encoding="utf-8") as fh:
    metadata = json.load(fh)
assets = sorted(glob.glob(os.path.join(bundle_dir, "assets", "*")))
if assets:
    code = subprocess.call(
        [sys.executable, "-m", "pip", "install", "--quiet", "--no-index", "--no-deps",
         "--disable-pip-version-check", *assets]
    )
    if code:
        sys.exit(code)
sys.argv[0] = metadata["package_name"]
entry_point = metadata.get("entry_point")
if entry_point:
    exec(compile(entry_point, "<entry_point>", "exec"), {"__name__": "__main__"})
else:
    runpy.run_module(metadata["package_name"].replace("-", "_"), run_name="__main__", alter_sys=True)
"""

STUB_TEMPLATE = Template(
    r"""/* bundlr self-extracting stub (generated) */
#if !defined(_WIN32)
#define _XOPEN_SOURCE 700
#endif
#include <stdint.h>
#include <stdio.h>
#include <stdlib.h>
#include <string.h>
#include <time.h>
#ifdef _WIN32
#include <direct.h>
#include <process.h>
#include <windows.h>
#define PATH_SEP "\\"
#else
#include <ftw.h>
#include <sys/stat.h>
#include <sys/types.h>
#include <sys/wait.h>
#include <unistd.h>
#ifdef __APPLE__
#include <mach-o/dyld.h>
#endif
#define PATH_SEP "/"
#endif

#define SCAN_WINDOW $scan_window
#define TRAILER_SIZE $trailer_size
#define PATH_MAX_LEN 4096

static const char TRAILER_MAGIC[8] = {$trailer_magic};
static const char *PYTHON_REL = "$python_rel";
static const char *BOOTSTRAP = "$bootstrap";

static char temp_dir[PATH_MAX_LEN];

static int self_path(char *buf, size_t size) {
#ifdef _WIN32
    DWORD n = GetModuleFileNameA(NULL, buf, (DWORD)size);
    return (n == 0 || n >= size) ? -1 : 0;
#elif defined(__APPLE__)
    uint32_t n = (uint32_t)size;
    return _NSGetExecutablePath(buf, &n) == 0 ? 0 : -1;
#else
    ssize_t n = readlink("/proc/self/exe", buf, size - 1);
    if (n < 0) return -1;
    buf[n] = '\0';
    return 0;
#endif
}

static uint64_t read_u64le(const unsigned char *p) {
    uint64_t v = 0;
    for (int i = 7; i >= 0; i--) v = (v << 8) | p[i];
    return v;
}

/* Bytes are compared one by one so the magic sequence never appears in this binary. */
static int is_gzip_magic(const unsigned char *p) {
    return p[0] == 0x1f && p[1] == 0x8b && p[2] == 0x08;
}

static int locate_payload(FILE *f, uint64_t *offset, uint64_t *length) {
    unsigned char trailer[TRAILER_SIZE];
    unsigned char buf[SCAN_WINDOW + 2];
    size_t carry = 0;
    long pos = 0;
    long size;

    if (fseek(f, 0, SEEK_END) != 0) return -1;
    size = ftell(f);
    if (size >= TRAILER_SIZE && fseek(f, size - TRAILER_SIZE, SEEK_SET) == 0 &&
        fread(trailer, 1, TRAILER_SIZE, f) == TRAILER_SIZE && memcmp(trailer, TRAILER_MAGIC, 8) == 0) {
        *offset = read_u64le(trailer + 8);
        *length = read_u64le(trailer + 16);
        if (*offset + *length <= (uint64_t)(size - TRAILER_SIZE)) return 0;
    }

    if (fseek(f, 0, SEEK_SET) != 0) return -1;
    for (;;) {
        size_t n = fread(buf + carry, 1, SCAN_WINDOW, f);
        size_t total = carry + n;
        if (n == 0) return -1;
        for (size_t i = 0; i + 3 <= total; i++) {
            if (is_gzip_magic(buf + i)) {
                *offset = (uint64_t)(pos - (long)carry + (long)i);
                *length = (uint64_t)size - *offset;
                return 0;
            }
        }
        carry = total < 2 ? total : 2;
        memmove(buf, buf + total - carry, carry);
        pos += (long)n;
    }
}

static int copy_range(FILE *in, uint64_t offset, uint64_t length, const char *dest) {
    char buf[65536];
    uint64_t remaining = length;
    FILE *out = fopen(dest, "wb");
    if (!out) return -1;
    if (fseek(in, (long)offset, SEEK_SET) != 0) {
        fclose(out);
        return -1;
    }
    while (remaining > 0) {
        size_t want = remaining < sizeof buf ? (size_t)remaining : sizeof buf;
        size_t n = fread(buf, 1, want, in);
        if (n == 0 || fwrite(buf, 1, n, out) != n) {
            fclose(out);
            return -1;
        }
        remaining -= n;
    }
    return fclose(out);
}

static int write_text(const char *path, const char *text) {
    FILE *out = fopen(path, "wb");
    if (!out) return -1;
    if (fputs(text, out) < 0) {
        fclose(out);
        return -1;
    }
    return fclose(out);
}

static int run(char **argv) {
#ifdef _WIN32
    int argc = 0;
    while (argv[argc]) argc++;
    char **quoted = calloc((size_t)argc + 1, sizeof(char *));
    for (int i = 0; i < argc; i++) {
        size_t len = strlen(argv[i]);
        quoted[i] = malloc(len + 3);
        snprintf(quoted[i], len + 3, "\"%s\"", argv[i]);
    }
    intptr_t rc = _spawnvp(_P_WAIT, argv[0], (const char *const *)quoted);
    for (int i = 0; i < argc; i++) free(quoted[i]);
    free(quoted);
    return rc < 0 ? 1 : (int)rc;
#else
    int status = 0;
    pid_t pid = fork();
    if (pid < 0) return 1;
    if (pid == 0) {
        execvp(argv[0], argv);
        _exit(127);
    }
    if (waitpid(pid, &status, 0) < 0) return 1;
    return WIFEXITED(status) ? WEXITSTATUS(status) : 1;
#endif
}

static int make_temp_dir(void) {
#ifdef _WIN32
    char base[MAX_PATH];
    if (GetTempPathA(MAX_PATH, base) == 0) return -1;
    snprintf(temp_dir, sizeof temp_dir, "%sbundlr_app_%lld_%lu", base, (long long)time(NULL),
             (unsigned long)GetCurrentProcessId());
    return _mkdir(temp_dir);
#else
    const char *base = getenv("TMPDIR");
    if (!base || !*base) base = "/tmp";
    snprintf(temp_dir, sizeof temp_dir, "%s/bundlr_app_%lld_XXXXXX", base, (long long)time(NULL));
    return mkdtemp(temp_dir) ? 0 : -1;
#endif
}

static int make_dir(const char *path) {
#ifdef _WIN32
    return _mkdir(path);
#else
    return mkdir(path, 0755);
#endif
}

#ifndef _WIN32
static int remove_entry(const char *path, const struct stat *sb, int flag, struct FTW *ftwbuf) {
    (void)sb;
    (void)flag;
    (void)ftwbuf;
    return remove(path);
}
#endif

static void cleanup(void) {
    if (!temp_dir[0]) return;
#ifdef _WIN32
    char cmd[PATH_MAX_LEN + 32];
    snprintf(cmd, sizeof cmd, "rmdir /s /q \"%s\"", temp_dir);
    system(cmd);
#else
    nftw(temp_dir, remove_entry, 16, FTW_DEPTH | FTW_PHYS);
#endif
}

int main(int argc, char **argv) {
    char exe[PATH_MAX_LEN];
    char payload[PATH_MAX_LEN + 32];
    char bundle_dir[PATH_MAX_LEN + 32];
    char runtime_dir[PATH_MAX_LEN + 32];
    char runtime_archive[PATH_MAX_LEN + 64];
    char script[PATH_MAX_LEN + 32];
    char python[PATH_MAX_LEN + 64];
    uint64_t offset = 0, length = 0;
    char **child;
    int code = 1;
    FILE *self;

    if (self_path(exe, sizeof exe) != 0) {
        fprintf(stderr, "bundlr: cannot locate own executable\n");
        return 1;
    }
    if (make_temp_dir() != 0) {
        fprintf(stderr, "bundlr: cannot create temporary directory\n");
        return 1;
    }

    self = fopen(exe, "rb");
    if (!self || locate_payload(self, &offset, &length) != 0) {
        fprintf(stderr, "bundlr: no embedded payload found\n");
        if (self) fclose(self);
        goto done;
    }
    snprintf(payload, sizeof payload, "%s" PATH_SEP "bundle.tar.gz", temp_dir);
    if (copy_range(self, offset, length, payload) != 0) {
        fprintf(stderr, "bundlr: cannot copy payload\n");
        fclose(self);
        goto done;
    }
    fclose(self);

    {
        char *tar_args[] = {"tar", "-xzf", payload, "-C", temp_dir, NULL};
        if (run(tar_args) != 0) {
            fprintf(stderr, "bundlr: payload extraction failed\n");
            goto done;
        }
    }

    snprintf(bundle_dir, sizeof bundle_dir, "%s" PATH_SEP "bundle", temp_dir);
    snprintf(runtime_dir, sizeof runtime_dir, "%s" PATH_SEP "python_runtime", temp_dir);
    snprintf(runtime_archive, sizeof runtime_archive, "%s" PATH_SEP "python_runtime.tar.gz", bundle_dir);
    make_dir(runtime_dir);
    {
        char *tar_args[] = {"tar", "-xzf", runtime_archive, "-C", runtime_dir, "--strip-components=1", NULL};
        if (run(tar_args) != 0) {
            fprintf(stderr, "bundlr: runtime extraction failed\n");
            goto done;
        }
    }

    snprintf(script, sizeof script, "%s" PATH_SEP "bootstrap.py", temp_dir);
    if (write_text(script, BOOTSTRAP) != 0) {
        fprintf(stderr, "bundlr: cannot write bootstrap script\n");
        goto done;
    }

    snprintf(python, sizeof python, "%s" PATH_SEP "%s", runtime_dir, PYTHON_REL);
    child = calloc((size_t)argc + 3, sizeof(char *));
    if (!child) goto done;
    child[0] = python;
    child[1] = script;
    child[2] = bundle_dir;
    for (int i = 1; i < argc; i++) child[i + 2] = argv[i];
    code = run(child);
    free(child);

done:
    cleanup();
    return code;
}
"""
)


def c_string_literal(text: str) -> str:
    """Escape ``text`` for use inside a double-quoted C string literal."""
    out = []
    for ch in text:
        if ch == "\\":
            out.append("\\\\")
        elif ch == '"':
            out.append('\\"')
        elif ch == "\n":
            out.append("\\n")
        elif ch == "\t":
            out.append("\\t")
        else:
            out.append(ch)
    return "".join(out)


def render_stub_source(target: TargetPlatform) -> str:
    python_rel = python_executable_path(target if target is not TargetPlatform.ALL else host_target() or target)
    return STUB_TEMPLATE.substitute(
        scan_window=SCAN_WINDOW,
        trailer_size=TRAILER_SIZE,
        trailer_magic=", ".join(f"'{chr(b)}'" for b in TRAILER_MAGIC),
        python_rel=c_string_literal(python_rel),
        bootstrap=c_string_literal(BOOTSTRAP_SOURCE),
    )


class StubBuilder:
    """Compiles the self-extraction stub for a target with a C (cross) compiler."""

    def __init__(self, config: BuildConfig, *, runner: Optional[ProcessRunner] = None):
        self.config = config
        self.runner = runner or ProcessRunner()

    def stub_filename(self, target: TargetPlatform) -> str:
        return f"{STUB_NAME}{target.executable_extension}"

    def compile_command(self, target: TargetPlatform, source: Path, output: Path) -> List[str]:
        compiler = list(self.config.stub_compiler)
        if not compiler:
            raise StubCompileError("No stub compiler configured")
        cmd = [*compiler]
        if target is not TargetPlatform.ALL and target is not host_target():
            if Path(compiler[0]).name not in _CROSS_COMPILERS:
                raise StubCompileError(f"{compiler[0]} cannot cross-compile the stub for {target.value}")
            cmd.extend(["-target", zig_target(target)])
        cmd.extend(["-Os", "-o", str(output), str(source)])
        return cmd

    def build(self, target: TargetPlatform, work_dir: Path) -> Path:
        if self.config.stub_path:
            if not self.config.stub_path.is_file():
                raise StubCompileError(f"Configured stub {self.config.stub_path} does not exist")
            dest = work_dir / self.stub_filename(target)
            shutil.copyfile(self.config.stub_path, dest)
            return dest

        source = work_dir / f"{STUB_NAME}.c"
        source.write_text(render_stub_source(target))
        output = work_dir / self.stub_filename(target)
        result = self.runner.capture(self.compile_command(target, source, output), cwd=work_dir)
        if result.exit_code != 0 or not output.exists():
            raise StubCompileError(
                f"Stub compilation for {target.value} failed: {result.stderr.strip() or 'no output'}",
                exit_code=result.exit_code,
            )
        LOG.debug("Compiled stub for %s (%s bytes)", target.value, output.stat().st_size)
        return output
