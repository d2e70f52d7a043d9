import torch
from progstream import decode, encode


def main():
    torch.manual_seed(0)
    W = torch.randn(4, 4)
    interface = [4, 4, 8, 16]
    enc = encode(W, interface)
    for levels in range(1, len(interface) + 1):
        W_rec = decode(enc.buffers[:levels], enc.scale, enc.min, interface, num_elements=W.numel()).reshape(W.shape)
        print(f"levels={levels} bits={sum(interface[:levels])} max_abs_error:", float((W_rec - W).abs().max()))


if __name__ == "__main__":
    main()
