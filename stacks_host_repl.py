#!/usr/bin/env python3
# stacks_host_repl.py
#
# Console hôte pour la VM Stacks :
# - une Machine, pilotée uniquement par l'API d'enregistrement (pas de parseur Forth)
# - les commandes commencent par ':'   (:word, :const, :var, :run, :demo, ...)
# - les dot-commands (.stack, .see, ...) sont déléguées à Machine.handle_dot_command
#
# Commandes prévues:
#   :word NAME tok tok ...  -> register_word(NAME, [tok, ...])
#   :const NAME VALUE       -> register_constant
#   :var NAME [VALUE]       -> register_variable
#   :run NAME               -> execute_word, affiche la sortie puis ok / failed
#   :demo                   -> enregistre le programme de démo et lance "first"
#   :read-from "file"       -> exécute les commandes d'un fichier
#   :reset                  -> nouvelle Machine
#   :quit                   -> quitte
#
# Tests intégrés :
#   python stacks_host_repl.py --test

from __future__ import annotations

import io
import sys
import shlex
import unittest
from typing import Iterable, List, Optional, Tuple

from prompt_toolkit.completion import Completer, Completion

from stacks_vm_core import DOT_CMDS, Machine, MachineError

HOST_CMDS = [":const", ":demo", ":help", ":quit", ":read-from", ":reset", ":run", ":var", ":word"]

# Programme de démonstration : "first" affiche les mots, 1 2 3, puis hello world!
DEMO_PROGRAM: List[Tuple[str, List[str]]] = [
    ("printit",  ["hello", ";"]),
    ("outnum",   ["dup", ".", ";"]),
    ("testmath", ["1", "outnum", "2", "outnum", "+", ".", ";"]),
    ("second",   ["testmath", "printit", ";"]),
    ("first",    ["words", "second", "bye", ";"]),
]


def install_demo(vm: Machine) -> None:
    for name, body in DEMO_PROGRAM:
        vm.register_word(name, body)


class StacksCompleter(Completer):
    """Completes host commands, dot-commands, then dictionary names."""

    def __init__(self, repl: "HostREPL") -> None:
        self.repl = repl

    def get_completions(self, document, complete_event):
        text = document.text_before_cursor
        stripped = text.lstrip()
        parts = stripped.split()

        # Premier mot : commande hôte ou dot-command
        if len(parts) <= 1 and not text.endswith(" "):
            fragment = parts[0] if parts else ""
            for name in HOST_CMDS + sorted(DOT_CMDS):
                if name.startswith(fragment):
                    yield Completion(name, start_position=-len(fragment))
            return

        word_before = document.get_word_before_cursor(WORD=True)
        prefix = word_before or ""
        vm = self.repl.vm
        seen = set()
        for name in vm.dict.primitive_names() + vm.dict.word_names():
            if name in seen:
                continue
            seen.add(name)
            if name.startswith(prefix):
                yield Completion(name, start_position=-len(prefix))


class HostREPL:
    """
    REPL texte au-dessus d'une Machine.

    handle_line() traite une ligne et renvoie True si elle a été acceptée ;
    toute la sortie passe par print / sys.stdout pour rester testable
    avec redirect_stdout.
    """

    def __init__(self) -> None:
        self.vm = Machine()

    # ------------------------------------------------------------------
    # Utilitaires internes
    # ------------------------------------------------------------------

    def _run_word(self, name: str) -> bool:
        out = io.StringIO()
        ok = self.vm.execute_word(name, out=out)
        text = out.getvalue()
        if text:
            sys.stdout.write(text)
            if not text.endswith("\n"):
                sys.stdout.write("\n")
        if ok:
            print("ok")
        else:
            kind = self.vm.fault.kind.name if self.vm.fault is not None else "error"
            print(f"failed ({kind})")
        sys.stdout.flush()
        return ok

    def _register(self, kind: str, args: List[str]) -> bool:
        try:
            if kind == "word":
                if not args:
                    print("usage: :word NAME tok tok ...")
                    return False
                entry = self.vm.register_word(args[0], args[1:])
            elif kind == "const":
                if len(args) != 2:
                    print("usage: :const NAME VALUE")
                    return False
                entry = self.vm.register_constant(args[0], int(args[1], 10))
            else:
                if len(args) not in (1, 2):
                    print("usage: :var NAME [VALUE]")
                    return False
                initial = int(args[1], 10) if len(args) == 2 else 0
                entry = self.vm.register_variable(args[0], initial)
        except ValueError as e:
            print(f"bad value: {e}")
            return False
        except MachineError as e:
            print(f"register error: {e}")
            return False
        print(f"{kind} {args[0]} @{entry}")
        return True

    def _read_from(self, filename: str) -> bool:
        try:
            with open(filename, "r", encoding="utf-8") as f:
                lines = f.read().splitlines()
        except OSError as e:
            print(f"read-from: cannot open {filename!r}: {e}")
            return False
        ok = True
        for ln in lines:
            ok = self.handle_line(ln) and ok
        return ok

    # ------------------------------------------------------------------
    # Commandes
    # ------------------------------------------------------------------

    def handle_line(self, line: str) -> bool:
        """
        Traite une ligne de commande.
        Peut lever SystemExit pour :quit.
        """
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            return True

        # 1) dot-commands : .stack, .see W, ...
        if stripped.startswith("."):
            out = io.StringIO()
            self.vm.handle_dot_command(stripped, out)
            sys.stdout.write(out.getvalue())
            sys.stdout.flush()
            return True

        if not stripped.startswith(":"):
            print(f"unknown command: {stripped!r} (:help for help)")
            return False

        try:
            parts = shlex.split(stripped)
        except ValueError as e:
            print(f"parse error: {e}")
            return False

        cmd, args = parts[0], parts[1:]

        if cmd in (":word", ":const", ":var"):
            return self._register(cmd[1:], args)

        if cmd == ":run":
            if len(args) != 1:
                print("usage: :run NAME")
                return False
            return self._run_word(args[0])

        if cmd == ":demo":
            try:
                install_demo(self.vm)
            except MachineError as e:
                print(f"register error: {e}")
                return False
            return self._run_word("first")

        if cmd == ":read-from":
            if not args:
                print('usage: :read-from "filename"')
                return False
            return self._read_from(args[0])

        if cmd == ":reset":
            self.vm = Machine()
            print("reset.")
            return True

        if cmd in (":quit", ":exit"):
            print("bye.")
            raise SystemExit(0)

        if cmd in (":help", ":?"):
            self._print_help()
            return True

        print(f"unknown host command: {cmd!r}")
        self._print_help()
        return False

    def _print_help(self) -> None:
        print("Host commands:")
        print("  :word NAME tok tok ...     - register a word (end the body with ;)")
        print("  :const NAME VALUE          - register a constant")
        print("  :var NAME [VALUE]          - register a variable")
        print("  :run NAME                  - execute a word")
        print("  :demo                      - register and run the demo program")
        print("  :read-from \"file\"          - execute commands from file")
        print("  :reset                     - start over with a fresh machine")
        print("  .stack/.see W/.heap/...    - machine dot-commands (.help)")
        print("  :quit                      - exit REPL")

    # ------------------------------------------------------------------
    # Boucle principale (PromptSession)
    # ------------------------------------------------------------------

    def run(self) -> None:
        from prompt_toolkit import PromptSession

        print("Stacks Host REPL")
        print("Register words with :word, run them with :run.  (:help for help)")

        session = PromptSession(completer=StacksCompleter(self))
        while True:
            try:
                line = session.prompt("stacks> ")
            except EOFError:
                print("\nEOF -> quitting.")
                break
            except KeyboardInterrupt:
                print("\nKeyboardInterrupt (Ctrl-C). Use ':quit' to exit.")
                continue
            try:
                self.handle_line(line)
            except SystemExit:
                return


TEST_MODULES = ("test_stacks_cell", "test_stacks_vm_core", "test_stacks_host_repl")


def run_tests(names: Iterable[str] = TEST_MODULES) -> bool:
    suite = unittest.defaultTestLoader.loadTestsFromNames(list(names))
    result = unittest.TextTestRunner(verbosity=2).run(suite)
    return result.wasSuccessful()


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if "--test" in argv:
        return 0 if run_tests() else 1
    HostREPL().run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
