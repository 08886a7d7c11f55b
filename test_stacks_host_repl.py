#!/usr/bin/env python3
# test_stacks_host_repl.py
#
# Tests de la console hôte (sans lancer la boucle prompt_toolkit).

import io
import os
import sys
import tempfile
import unittest
from contextlib import redirect_stdout

from prompt_toolkit.completion import CompleteEvent
from prompt_toolkit.document import Document

from stacks_host_repl import HostREPL, StacksCompleter, install_demo
from stacks_vm_core import Machine


class TestHostREPL_Commands(unittest.TestCase):
    def setUp(self):
        # On ne lance pas repl.run(), on utilise uniquement l'API interne
        self.repl = HostREPL()

    def feed(self, *lines) -> str:
        buf = io.StringIO()
        with redirect_stdout(buf):
            for ln in lines:
                self.repl.handle_line(ln)
        return buf.getvalue()

    def test_register_and_run(self):
        out = self.feed(
            ":word outnum dup . ;",
            ":word testmath 1 outnum 2 outnum + . ;",
            ":word main testmath bye",
            ":run main",
        )
        self.assertIn("word outnum @0", out)
        self.assertIn("1 2 3", out)
        self.assertTrue(out.rstrip().endswith("ok"))

    def test_run_reports_fault_kind(self):
        out = self.feed(":word oops drop bye", ":run oops")
        self.assertIn("failed (STACK_UNDERFLOW)", out)

    def test_unknown_token_is_rejected(self):
        out = self.feed(":word bad 1 nosuch ;")
        self.assertIn("register error", out)
        self.assertIsNone(self.repl.vm.dict.find_word("bad"))

    def test_constant_and_variable(self):
        out = self.feed(
            ":const ten 10",
            ":var counter 5",
            ":word main ten counter @ + . 1 counter ! counter @ . bye",
            ":run main",
        )
        self.assertIn("15 1", out)
        self.assertIn("ok", out)

    def test_bad_values_and_usage(self):
        out = self.feed(":const ten dix", ":var", ":run", "hello")
        self.assertIn("bad value", out)
        self.assertIn("usage: :var", out)
        self.assertIn("usage: :run", out)
        self.assertIn("unknown command", out)

    def test_dot_commands_go_to_machine(self):
        out = self.feed(":word main 1 2 bye", ":run main", ".stack", ".see main")
        self.assertIn("<2> 1 2", out)
        self.assertIn(": main  1 2 bye", out)

    def test_bad_heap_count_does_not_escape(self):
        out = self.feed(".heap abc", ":word main bye", ":run main")
        self.assertIn("bad arg: abc", out)
        self.assertIn("ok", out)

    def test_demo(self):
        out = self.feed(":demo")
        self.assertIn("1 2 3 hello world!", out)
        self.assertIn("ok", out)

    def test_reset(self):
        self.feed(":word main bye")
        self.feed(":reset")
        self.assertIsNone(self.repl.vm.dict.find_word("main"))

    def test_read_from(self):
        fd, path = tempfile.mkstemp(suffix=".stk")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write("# script\n:word main 40 2 + . bye\n\n:run main\n")
            out = self.feed(f':read-from "{path}"')
        finally:
            os.unlink(path)
        self.assertIn("42", out)
        self.assertIn("ok", out)

    def test_quit_raises_systemexit(self):
        with self.assertRaises(SystemExit):
            self.feed(":quit")


class TestHostREPL_Completer(unittest.TestCase):
    def setUp(self):
        self.repl = HostREPL()
        install_demo(self.repl.vm)
        self.completer = StacksCompleter(self.repl)

    def complete(self, text):
        doc = Document(text, cursor_position=len(text))
        return [c.text for c in self.completer.get_completions(doc, CompleteEvent())]

    def test_completes_commands(self):
        self.assertEqual(self.complete(":ru"), [":run"])
        self.assertIn(".stack", self.complete(".st"))

    def test_completes_dictionary_names(self):
        names = self.complete(":run test")
        self.assertEqual(names, ["testmath"])
        self.assertIn("dup", self.complete(":word w d"))


class TestDemoProgram(unittest.TestCase):
    def test_first_prints_words_numbers_and_greeting(self):
        vm = Machine()
        install_demo(vm)
        self.assertTrue(vm.execute_word("first"))
        out = vm.out.getvalue()
        self.assertTrue(out.startswith("; bye hello "))
        self.assertIn("printit outnum testmath second first 1 2 3 hello world!\n", out)


def run_all():
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)


if __name__ == "__main__":
    run_all()
