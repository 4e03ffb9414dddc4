import subprocess
from pathlib import Path

def run(cmd, cwd=None):
    print(f"[{cwd or '.'}]$ {cmd}")
    subprocess.check_call(cmd, shell=True, cwd=cwd)

def git_commit_change(path, filename, message):
    file_path = path / filename
    with open(file_path, "a") as f:
        f.write(message + "\n")
    run(f"git add {filename}", cwd=path)
    run(f'git commit -m "{message}"', cwd=path)

# --- Setup base paths ---
base = Path("stack-playground").absolute()
if base.exists():
    run("rm -rf stack-playground", cwd=base.parent)

base.mkdir()
origin = base / "origin.git"
work = base / "work"
other = base / "other"

# --- Bare remote and a working clone ---
run(f"git init --bare -b main {origin}")
run(f"git clone {origin} {work}")
run("git checkout -B main", cwd=work)
(work / "README.md").write_text("# stack playground\n")
run("git add README.md", cwd=work)
run('git commit -m "Initial commit"', cwd=work)
run("git push -u origin main", cwd=work)

# --- Three stacked branches, one commit each ---
previous = "main"
for i in range(1, 4):
    branch = f"b{i}"
    run(f"git checkout -b {branch} {previous}", cwd=work)
    git_commit_change(work, f"b{i}.txt", f"{branch}: change {i}")
    run(f"git push -u origin {branch}", cwd=work)
    previous = branch

# --- Someone squash-merges b1 into main on the remote ---
run(f"git clone {origin} {other}")
run("git merge --squash origin/b1", cwd=other)
run('git commit -m "b1 (squashed)"', cwd=other)
run("git push origin main", cwd=other)
run("git fetch origin", cwd=work)

print(f"\nPlayground created at {base}")
print("Try:")
print(f"  cd {work}")
print("  stack-sync list-stack --base main --head b3")
print("  stack-sync sync-stack --base main --new-base origin/main --head b3")

def print_git_tree(path, name):
    print(f"\n=== {name} ===")
    run("git log --oneline --graph --decorate --all --abbrev-commit", cwd=path)

print_git_tree(work, "WORK CLONE")
