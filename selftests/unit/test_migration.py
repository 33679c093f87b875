#!/usr/bin/python

import os
import shutil
import signal
import sys
import tempfile
import threading
import unittest

# simple magic for using scripts within a source tree
basedir = os.path.dirname(os.path.dirname(os.path.dirname(
    os.path.abspath(__file__))))
if os.path.isdir(os.path.join(basedir, 'domctl')):
    sys.path.append(basedir)

from domctl import defaults
from domctl import migration
from domctl import platform
from domctl import savefile
from domctl import utils_lock
from domctl import utils_misc
from domctl.migration import SenderState

from fake_platform import FakePlatform, STATE, close_all, make_config
from fake_platform import make_context

RUNE = "exec ssh host xl migrate-receive"


def stream_prefix(config):
    return savefile.encode(config.to_stream_data(),
                           savefile.MANDATORY_FLAG_ALL)


class Relay(threading.Thread):

    """
    Copies src to dst, recording every chunk in a shared transcript.
    """

    def __init__(self, direction, src, dst, transcript, lock):
        threading.Thread.__init__(self)
        self.daemon = True
        self.direction = direction
        self.src = src
        self.dst = dst
        self.transcript = transcript
        self.lock = lock

    def run(self):
        try:
            while True:
                data = os.read(self.src, 65536)
                if not data:
                    break
                with self.lock:
                    self.transcript.append((self.direction, data))
                utils_misc.write_exactly(self.dst, data)
        finally:
            close_all(self.src, self.dst)


class ScriptedReceiver(threading.Thread):

    """
    Plays the receiving end from a script.

    An int step reads that many bytes, a bytes step writes them; the
    write end is closed when the script is over.
    """

    def __init__(self, script):
        threading.Thread.__init__(self)
        self.daemon = True
        self.script = script
        self.received = b""
        self.error = None
        self.to_sender_r, self.to_sender_w = os.pipe()
        self.from_sender_r, self.from_sender_w = os.pipe()

    def session(self):
        return migration.MigrationSession("sender", self.from_sender_w,
                                          self.to_sender_r, rune=RUNE)

    def run(self):
        try:
            for step in self.script:
                if isinstance(step, int):
                    self.received += utils_misc.read_exactly(
                        self.from_sender_r, step)
                else:
                    utils_misc.write_exactly(self.to_sender_w, step)
        except (OSError, utils_misc.ShortReadError) as details:
            self.error = details
        finally:
            close_all(self.to_sender_w)

    def cleanup(self):
        self.join(5)
        close_all(self.to_sender_r, self.from_sender_r)


class MigrationTestBase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.platform = FakePlatform()
        self.ctx = make_context(self.platform,
                                os.path.join(self.tmpdir, "sender"))
        self.config = make_config("vm1")
        self.domid = self.platform.add_domain("vm1", self.config)

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def sender(self, session):
        session.config_data = self.config.to_stream_data()
        return migration.MigrationSender(self.ctx, self.domid, session,
                                         "vm1")

    def run_scripted(self, script):
        peer = ScriptedReceiver(script)
        peer.start()
        session = peer.session()
        sender = self.sender(session)
        try:
            rc = sender.run()
        finally:
            session.close_send()
            peer.cleanup()
        return rc, sender, peer


class EndToEndTest(MigrationTestBase):

    def setUp(self):
        MigrationTestBase.setUp(self)
        self.target = FakePlatform(first_domid=20)
        self.target_ctx = make_context(self.target,
                                       os.path.join(self.tmpdir, "target"))
        self.transcript = []
        transcript_lock = threading.Lock()
        s_out_r, self.s_out_w = os.pipe()
        self.r_in_r, r_in_w = os.pipe()
        r_out_r, self.r_out_w = os.pipe()
        self.s_in_r, s_in_w = os.pipe()
        self.relays = [
            Relay("to-receiver", s_out_r, r_in_w, self.transcript,
                  transcript_lock),
            Relay("to-sender", r_out_r, s_in_w, self.transcript,
                  transcript_lock)]
        for relay in self.relays:
            relay.start()

    def tearDown(self):
        close_all(self.s_out_w, self.r_out_w, self.r_in_r, self.s_in_r)
        for relay in self.relays:
            relay.join(5)
        MigrationTestBase.tearDown(self)

    def migrate(self):
        result = {}
        receiver = migration.MigrationReceiver(self.target_ctx, self.r_out_w,
                                               self.r_in_r)

        def receive():
            result["rc"] = receiver.run()

        thread = threading.Thread(target=receive)
        thread.daemon = True
        thread.start()
        session = migration.MigrationSession("sender", self.s_out_w,
                                             self.s_in_r)
        sender = self.sender(session)
        rc = sender.run()
        thread.join(10)
        self.assertFalse(thread.is_alive())
        return rc, sender, result["rc"], receiver

    def stream_bytes(self, direction):
        return b"".join(data for name, data in self.transcript
                        if name == direction)

    def first_chunk_past(self, direction, offset):
        """
        Index in the transcript of the chunk carrying byte offset of
        direction.
        """
        seen = 0
        for index, (name, data) in enumerate(self.transcript):
            if name != direction:
                continue
            seen += len(data)
            if seen > offset:
                return index
        self.fail("%s never reached offset %d" % (direction, offset))

    def test_success(self):
        rc, sender, target_rc, receiver = self.migrate()
        self.assertEqual(rc, migration.EXIT_SUCCESS)
        self.assertEqual(target_rc, migration.EXIT_SUCCESS)
        self.assertEqual(sender.state, SenderState.DONE)

        self.assertIn(("domain_rename",
                       (self.domid, "vm1", "vm1--migratedaway")),
                      self.platform.calls)
        self.assertIn(("domain_destroy", (self.domid,)), self.platform.calls)
        self.assertNotIn("domain_resume", self.platform.call_names())

        domain = self.target.domains[receiver.domid]
        self.assertEqual(domain.name, "vm1")
        self.assertFalse(domain.paused)
        self.assertEqual(self.target_ctx.common_domname, "vm1")

    def test_transcript(self):
        self.migrate()
        prefix = stream_prefix(self.config) + STATE
        self.assertEqual(self.stream_bytes("to-receiver"),
                         prefix + migration.PERMISSION_TO_GO)
        self.assertEqual(self.stream_bytes("to-sender"),
                         migration.RECEIVER_BANNER +
                         migration.RECEIVER_READY +
                         migration.RECEIVER_REPORT + b"\0")

        state_done = self.first_chunk_past("to-receiver", len(prefix) - 1)
        ready = self.first_chunk_past("to-sender",
                                      len(migration.RECEIVER_BANNER))
        go = self.first_chunk_past("to-receiver", len(prefix))
        self.assertLess(state_done, ready)
        self.assertLess(ready, go)

    def test_failure_at_target(self):
        self.target.failures["domain_unpause"] = platform.ERROR_FAIL
        rc, sender, target_rc, receiver = self.migrate()
        self.assertEqual(rc, migration.EXIT_FAILURE)
        self.assertEqual(target_rc, migration.EXIT_SUCCESS)
        self.assertEqual(sender.state, SenderState.FAILED_AT_TARGET)

        self.assertEqual(self.stream_bytes("to-sender")[-len(
            migration.PERMISSION_TO_GO) - 1:],
            b"\x03" + migration.PERMISSION_TO_GO)
        self.assertNotIn(receiver.domid, self.target.domains)
        self.assertIn(("domain_rename",
                       (self.domid, "vm1--migratedaway", "vm1")),
                      self.platform.calls)
        self.assertIn("domain_resume", self.platform.call_names())
        self.assertNotIn("domain_destroy", self.platform.call_names())
        self.assertEqual(self.platform.domains[self.domid].name, "vm1")

    def test_pause_after_migration(self):
        receiver = migration.MigrationReceiver(
            self.target_ctx, self.r_out_w, self.r_in_r,
            {"pause_after_migration": True})
        self.assertTrue(receiver.options.get_boolean("pause_after_migration"))
        thread = threading.Thread(target=receiver.run)
        thread.daemon = True
        thread.start()
        session = migration.MigrationSession("sender", self.s_out_w,
                                             self.s_in_r)
        self.assertEqual(self.sender(session).run(), migration.EXIT_SUCCESS)
        thread.join(10)
        self.assertTrue(self.target.domains[receiver.domid].paused)
        self.assertNotIn("domain_unpause", self.target.call_names())


class SenderFailureTest(MigrationTestBase):

    def length(self):
        return len(stream_prefix(self.config)) + len(STATE)

    def test_banner_mismatch(self):
        rc, sender, _ = self.run_scripted(
            [b"x" * len(migration.RECEIVER_BANNER)])
        self.assertEqual(rc, migration.EXIT_FAILURE)
        self.assertEqual(sender.state, SenderState.FAILED_BEFORE_GO)
        self.assertNotIn("domain_suspend", self.platform.call_names())
        self.assertNotIn("domain_resume", self.platform.call_names())

    def test_banner_mismatch_error(self):
        rfd, wfd = os.pipe()
        try:
            os.write(wfd, b"y" * len(migration.RECEIVER_BANNER))
            with self.assertRaises(migration.ProtocolMismatchError) as cm:
                migration.read_fixed_message(rfd, migration.RECEIVER_BANNER,
                                             "banner", RUNE)
            self.assertIn(RUNE, str(cm.exception))
            self.assertEqual(cm.exception.stream, migration.RECEIVER_STREAM)
        finally:
            close_all(rfd, wfd)

    def test_suspend_timeout(self):
        self.platform.failures["domain_suspend"] = \
            platform.ERROR_GUEST_TIMEDOUT
        rc, sender, _ = self.run_scripted([migration.RECEIVER_BANNER])
        self.assertEqual(rc, migration.EXIT_FAILURE)
        self.assertEqual(sender.state, SenderState.FAILED_SUSPEND)
        self.assertNotIn("domain_resume", self.platform.call_names())

    def test_suspend_failure_resumes(self):
        self.platform.failures["domain_suspend"] = platform.ERROR_FAIL
        rc, sender, _ = self.run_scripted([migration.RECEIVER_BANNER])
        self.assertEqual(rc, migration.EXIT_FAILURE)
        self.assertEqual(sender.state, SenderState.FAILED_BEFORE_GO)
        self.assertIn("domain_resume", self.platform.call_names())

    def test_no_ready_resumes(self):
        rc, sender, peer = self.run_scripted([migration.RECEIVER_BANNER,
                                              self.length()])
        self.assertEqual(rc, migration.EXIT_FAILURE)
        self.assertEqual(sender.state, SenderState.FAILED_BEFORE_GO)
        self.assertTrue(peer.received.endswith(STATE))
        self.assertNotIn("domain_rename", self.platform.call_names())
        self.assertIn("domain_resume", self.platform.call_names())

    def test_close_after_go(self):
        script = [migration.RECEIVER_BANNER, self.length(),
                  migration.RECEIVER_READY,
                  len(migration.PERMISSION_TO_GO)]
        with self.assertLogs("domctl.migration", "ERROR") as logs:
            rc, sender, peer = self.run_scripted(script)
        self.assertEqual(rc, migration.EXIT_FAILURE)
        self.assertEqual(sender.state, SenderState.FAILED_AFTER_GO)
        self.assertTrue(peer.received.endswith(migration.PERMISSION_TO_GO))
        self.assertNotIn("domain_resume", self.platform.call_names())
        self.assertNotIn("domain_destroy", self.platform.call_names())
        self.assertTrue([line for line in logs.output
                         if "Domain state is now undefined" in line])

    def test_bad_permission_to_resume(self):
        script = [migration.RECEIVER_BANNER, self.length(),
                  migration.RECEIVER_READY,
                  len(migration.PERMISSION_TO_GO),
                  migration.RECEIVER_REPORT + b"\x03",
                  b"z" * len(migration.PERMISSION_TO_GO)]
        rc, sender, _ = self.run_scripted(script)
        self.assertEqual(rc, migration.EXIT_FAILURE)
        self.assertEqual(sender.state, SenderState.FAILED_AFTER_GO)
        self.assertNotIn("domain_resume", self.platform.call_names())
        self.assertEqual(self.platform.domains[self.domid].name,
                         "vm1--migratedaway")

    def test_rename_failure_resumes(self):
        self.platform.failures["domain_rename"] = platform.ERROR_FAIL
        script = [migration.RECEIVER_BANNER, self.length(),
                  migration.RECEIVER_READY]
        rc, sender, _ = self.run_scripted(script)
        self.assertEqual(rc, migration.EXIT_FAILURE)
        self.assertEqual(sender.state, SenderState.FAILED_BEFORE_GO)
        self.assertIn("domain_resume", self.platform.call_names())


class ReceiverTest(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.platform = FakePlatform(first_domid=30)
        self.ctx = make_context(self.platform, self.tmpdir)
        self.config = make_config("vm1")
        self.in_r, self.in_w = os.pipe()
        self.out_r, self.out_w = os.pipe()

    def tearDown(self):
        close_all(self.in_r, self.in_w, self.out_r, self.out_w)
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_create_options(self):
        receiver = migration.MigrationReceiver(self.ctx, self.out_w,
                                               self.in_r, {"monitor": True})
        options = receiver._create_options()
        self.assertFalse(options["monitor"])
        self.assertTrue(options["paused"])
        self.assertEqual(options["send_back_fd"], self.out_w)
        receiver = migration.MigrationReceiver(self.ctx, self.out_w,
                                               self.in_r, {"daemonize": True})
        self.assertTrue(receiver._create_options()["monitor"])

    def test_bad_stream(self):
        os.write(self.in_w, b"not a save file".ljust(savefile.HEADER_SIZE))
        os.close(self.in_w)
        self.in_w = -1
        receiver = migration.MigrationReceiver(self.ctx, self.out_w,
                                               self.in_r)
        self.assertEqual(receiver.run(), migration.EXIT_FAILURE)
        self.assertEqual(os.read(self.out_r, 4096),
                         migration.RECEIVER_BANNER)
        self.assertEqual(self.platform.domains, {})

    def test_remus_failover(self):
        os.write(self.in_w, stream_prefix(self.config) + STATE)
        os.close(self.in_w)
        self.in_w = -1
        receiver = migration.MigrationReceiver(
            self.ctx, self.out_w, self.in_r,
            {"checkpointed_stream": platform.CheckpointedStream.REMUS})
        self.assertEqual(receiver.run(), migration.EXIT_SUCCESS)
        domain = self.platform.domains[receiver.domid]
        self.assertEqual(domain.name, "vm1")
        self.assertFalse(domain.paused)
        self.assertEqual(os.read(self.out_r, 4096),
                         migration.RECEIVER_BANNER)

    def test_colo_failover_leaves_running(self):
        os.write(self.in_w, stream_prefix(self.config) + STATE)
        os.close(self.in_w)
        self.in_w = -1
        receiver = migration.MigrationReceiver(
            self.ctx, self.out_w, self.in_r,
            {"checkpointed_stream": platform.CheckpointedStream.COLO})
        self.assertEqual(receiver.run(), migration.EXIT_SUCCESS)
        self.assertNotIn("domain_unpause", self.platform.call_names())

    def test_no_go_destroys_copy(self):
        os.write(self.in_w, stream_prefix(self.config) + STATE)
        os.close(self.in_w)
        self.in_w = -1
        receiver = migration.MigrationReceiver(self.ctx, self.out_w,
                                               self.in_r)
        self.assertEqual(receiver.run(), migration.EXIT_SUCCESS)
        self.assertNotIn(receiver.domid, self.platform.domains)
        expected = (migration.RECEIVER_BANNER + migration.RECEIVER_READY +
                    migration.RECEIVER_REPORT + b"\x03" +
                    migration.PERMISSION_TO_GO)
        self.assertEqual(utils_misc.read_exactly(self.out_r, len(expected)),
                         expected)

    def test_lock_failure(self):
        os.write(self.in_w, stream_prefix(self.config) + STATE)
        self.ctx.lock = utils_lock.SingleInstanceLock(
            os.path.join(self.tmpdir, "missing", "lock"))
        receiver = migration.MigrationReceiver(self.ctx, self.out_w,
                                               self.in_r)
        with self.assertLogs("domctl.migration", "ERROR") as logs:
            self.assertEqual(receiver.run(), migration.EXIT_FAILURE)
        self.assertIn("Domain creation failed", logs.output[0])
        self.assertIn("cannot open the lockfile", logs.output[0])
        self.assertEqual(self.platform.domains, {})

    def test_sigpipe_handler_restored(self):
        def handler(signum, frame):
            pass

        previous = signal.signal(signal.SIGPIPE, handler)
        try:
            os.close(self.in_w)
            self.in_w = -1
            rc = migration.migrate_receive(self.ctx, self.out_w, self.in_r)
            self.assertEqual(rc, migration.EXIT_FAILURE)
            self.assertIs(signal.getsignal(signal.SIGPIPE), handler)
        finally:
            signal.signal(signal.SIGPIPE, previous)


class RuneTest(unittest.TestCase):

    def test_default(self):
        self.assertEqual(migration.build_migration_rune("host"),
                         "exec ssh host xl migrate-receive")

    def test_flags(self):
        rune = migration.build_migration_rune(
            "host", "ssh -p 22", daemonize=False, debug=True,
            pause_after_migration=True, pass_tty=True, verbosity=2)
        self.assertEqual(rune,
                         "exec ssh -p 22 host xl -t -vv migrate-receive "
                         "-e -d -p")

    def test_empty_ssh_command(self):
        self.assertEqual(migration.build_migration_rune("nc host 1234", ""),
                         "nc host 1234")

    def test_replication(self):
        self.assertEqual(migration.build_replication_rune("host"),
                         "exec ssh host xl migrate-receive -r")
        self.assertEqual(
            migration.build_replication_rune("host", colo=True,
                                             netbufscript="/etc/ft",
                                             daemonize=False),
            "exec ssh host xl migrate-receive --colo --coloft-script "
            "/etc/ft -e")


class ReplicateTest(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.platform = FakePlatform()
        self.ctx = make_context(self.platform, self.tmpdir)
        self.domid = self.platform.add_domain("vm1")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_backup_failure_resumes(self):
        rc = migration.replicate_send(self.ctx, self.domid,
                                      options={"blackhole": True})
        self.assertEqual(rc, migration.EXIT_FAILURE)
        self.assertIn(("domain_remus_start",
                       (self.domid, defaults.REMUS_DEFAULT_INTERVAL,
                        False)), self.platform.calls)
        self.assertIn("domain_resume", self.platform.call_names())

    def test_suspend_timeout_no_resume(self):
        self.platform.remus_code = platform.ERROR_GUEST_TIMEDOUT
        rc = migration.replicate_send(self.ctx, self.domid,
                                      options={"blackhole": True,
                                               "interval": "50"})
        self.assertEqual(rc, migration.EXIT_FAILURE)
        self.assertIn(("domain_remus_start", (self.domid, 50, False)),
                      self.platform.calls)
        self.assertNotIn("domain_resume", self.platform.call_names())

    def test_primary_destroyed(self):
        self.platform.domains.clear()
        rc = migration.replicate_send(self.ctx, self.domid,
                                      options={"blackhole": True})
        self.assertEqual(rc, migration.EXIT_SUCCESS)
        self.assertNotIn("domain_resume", self.platform.call_names())

    def test_colo_conflicts(self):
        self.assertRaises(ValueError, migration.replicate_send, self.ctx,
                          self.domid, None, {"colo": True, "interval": 100})
        self.assertRaises(ValueError, migration.replicate_send, self.ctx,
                          self.domid, None, {"colo": True,
                                             "blackhole": True})

    def test_no_config(self):
        self.platform.domains.clear()
        rc = migration.replicate_send(self.ctx, self.domid, "true")
        self.assertEqual(rc, migration.EXIT_FAILURE)
        self.assertNotIn("domain_remus_start", self.platform.call_names())


if __name__ == '__main__':
    unittest.main()
