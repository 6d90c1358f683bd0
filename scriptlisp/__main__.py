import asyncio
import sys
from pathlib import Path

from scriptlisp.lisp_runtime import ScriptRunner
from scriptlisp.lisp_printer import Printer
from scriptlisp.lisp_file import FileSystemVirtualFiles


# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)


def _runner(base_dir: Path) -> ScriptRunner:
    # `load` resolves local libraries next to the script (or the cwd)
    return ScriptRunner(virtual_files=FileSystemVirtualFiles(str(base_dir)))


async def run_script_file(file_path: str):
    """Render a script file non-interactively and exit with appropriate status."""
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    runner = _runner(p.parent.resolve())
    result = await runner.handle_script(source, mode="render")
    if result.output:
        sys.stdout.write(result.output)
        if not result.output.endswith("\n"):
            sys.stdout.write("\n")
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        raise SystemExit(1)


async def main():
    """Run a script file when provided, otherwise start the interactive REPL."""
    if len(sys.argv) > 1:
        arg = sys.argv[1]
        if not arg.startswith("-"):
            await run_script_file(arg)
            return

    print("scriptlisp REPL")
    print("Type 'exit' or press Ctrl+D to quit.")

    runner = _runner(Path.cwd())
    printer = Printer()
    # One top-level frame for the whole session so definitions persist
    session = runner.new_evaluator()

    while True:
        try:
            raw = await ainput(">> ")
            if raw == "":
                raise EOFError
            line = raw.strip()

            if not line:
                continue
            if line == "exit":
                break

            session.output.clear()
            session.side_effects.clear()
            session.call_stack.clear()
            result = await runner.handle_script(line, evaluator=session)

            if result.output:
                sys.stdout.write(result.output)
                if not result.output.endswith("\n"):
                    sys.stdout.write("\n")

            if result.status == 'error':
                print(result.format_error(), file=sys.stderr)
                continue

            if result.value is not None:
                print(printer.pformat(result.value))

        except EOFError:
            print("\nExiting.")
            break


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")
