import os
import socket
import tempfile
import unittest

from ports import find_available_port, is_port_available, publish_port


def occupy(port=0):
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", port))
    sock.listen(1)
    return sock


class TestPortSelection(unittest.TestCase):
    def test_free_default_port_is_kept(self):
        holder = occupy()
        port = holder.getsockname()[1]
        holder.close()

        self.assertEqual(find_available_port(port, host="127.0.0.1"), port)

    def test_occupied_port_scans_forward_to_smallest_free(self):
        busy = occupy()
        self.addCleanup(busy.close)
        port = busy.getsockname()[1]

        chosen = find_available_port(port, host="127.0.0.1")

        self.assertGreater(chosen, port)
        for candidate in range(port, chosen):
            self.assertFalse(is_port_available(candidate, "127.0.0.1"))

    def test_no_free_port_in_range_raises(self):
        busy = occupy()
        self.addCleanup(busy.close)
        with self.assertRaises(OSError):
            find_available_port(busy.getsockname()[1], host="127.0.0.1", limit=1)

    def test_publish_port_writes_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "port")
            publish_port(3005, path)
            with open(path, encoding="utf-8") as f:
                self.assertEqual(f.read(), "3005")

    def test_publish_port_without_file_is_noop(self):
        publish_port(3005, None)


if __name__ == "__main__":
    unittest.main()
