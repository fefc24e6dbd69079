"""
File storage for uploaded F-system documents
Workplan forms, MOU documents, signed MOUs, payment confirmations and report scans
are stored under string keys (e.g. f1-forms/DON/KH/0125/LCC-...-001.pdf).
Local disk is the only backend; keys are relative paths below UPLOAD_FOLDER.
"""
import os
import shutil
import uuid

from flask import current_app
from werkzeug.utils import secure_filename

ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'pdf', 'doc', 'docx', 'txt', 'csv', 'xlsx', 'html'}
DEFAULT_MAX_UPLOAD_MB = 10


class StorageError(Exception):
    """Raised when a storage key cannot be read, moved or written"""


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def validate_file_size(file):
    """Check an uploaded FileStorage against MAX_UPLOAD_MB without consuming it"""
    max_mb = current_app.config.get('MAX_UPLOAD_MB', DEFAULT_MAX_UPLOAD_MB)
    stream = file.stream
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    return size <= max_mb * 1024 * 1024


class LocalStorage:
    def __init__(self, root):
        self.root = os.path.abspath(root)

    def path_for(self, key):
        """Resolve a storage key to an absolute path, refusing keys that escape the root"""
        if not key:
            raise StorageError("Empty storage key")
        path = os.path.abspath(os.path.join(self.root, key))
        if path != self.root and not path.startswith(self.root + os.sep):
            raise StorageError(f"Storage key escapes storage root: {key}")
        return path

    def exists(self, key):
        return os.path.isfile(self.path_for(key))

    def save_file(self, file, filename, folder="uploads"):
        """
        Save an uploaded file under a unique name

        Args:
            file: werkzeug FileStorage or any object with save()
            filename: original client filename
            folder: key prefix

        Returns:
            tuple: (storage_key, original_filename)
        """
        original = secure_filename(filename) or "upload"
        key = f"{folder}/{uuid.uuid4().hex}_{original}"
        path = self.path_for(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        file.save(path)
        return key, filename

    def save_bytes(self, data, key):
        path = self.path_for(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        if isinstance(data, str):
            data = data.encode("utf-8")
        with open(path, "wb") as f:
            f.write(data)
        return key

    def read_bytes(self, key):
        path = self.path_for(key)
        if not os.path.isfile(path):
            raise StorageError(f"File not found: {key}")
        with open(path, "rb") as f:
            return f.read()

    def copy_file(self, src_key, dst_key):
        src = self.path_for(src_key)
        if not os.path.isfile(src):
            raise StorageError(f"File not found: {src_key}")
        dst = self.path_for(dst_key)
        os.makedirs(os.path.dirname(dst), exist_ok=True)
        shutil.copyfile(src, dst)
        return dst_key

    def move_file(self, src_key, dst_key):
        """
        Move a file to a new key

        Falls back to copy then delete when a rename is not possible
        (e.g. across devices). Moving a key onto itself is a no-op.
        """
        if src_key == dst_key:
            return dst_key
        src = self.path_for(src_key)
        dst = self.path_for(dst_key)
        if not os.path.isfile(src):
            raise StorageError(f"File not found: {src_key}")
        os.makedirs(os.path.dirname(dst), exist_ok=True)
        try:
            os.replace(src, dst)
        except OSError as e:
            current_app.logger.warning("Rename %s -> %s failed (%s), copying instead", src_key, dst_key, e)
            self.copy_file(src_key, dst_key)
            self.delete_file(src_key)
        return dst_key

    def delete_file(self, key):
        """Delete a stored file; returns False when nothing was there"""
        path = self.path_for(key)
        if not os.path.isfile(path):
            return False
        os.remove(path)
        return True


def get_storage():
    return LocalStorage(current_app.config['UPLOAD_FOLDER'])
