"""パイプライン共通例外

分類:
- ValidationError: 入力不正 (Item作成前に拒否)
- ProviderTransientError: ネットワーク/タイムアウト/レート制限 (リトライ可)
- ProviderPermanentError: 無効な宛先・非対応コンテンツ (リトライ不可)
- ConcurrencyConflict: ロック/クレーム取得失敗 (呼び出し側ではスキップ扱い)
- InvariantViolation: DONEなのに成果物なし等 (降格処理で捕捉してFAILEDへ)
"""


class MediaBlastError(Exception):
    """基底例外"""


class ValidationError(MediaBlastError):
    """テンプレート・宛先の入力不正"""


class NotFoundError(MediaBlastError):
    """レポート・アイテムが存在しない"""


class ProviderError(MediaBlastError):
    """外部プロバイダ呼び出しエラー"""

    retryable = True


class ProviderTransientError(ProviderError):
    """一時的エラー: リトライ対象"""

    retryable = True


class ProviderPermanentError(ProviderError):
    """恒久的エラー: リトライしない"""

    retryable = False


class ConcurrencyConflict(MediaBlastError):
    """ロック・クレームを取得できなかった"""


class InvariantViolation(MediaBlastError):
    """状態不変条件の違反"""


class ArtifactTooLargeError(MediaBlastError):
    """ダウンロードサイズ上限超過"""
